"""
Operational audit logging with structured JSON-Lines.
"""
import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List

from .config import get_config_dir


class AuditLogger:
    """Appends one JSON object per event to audit.jsonl in the config directory."""
    def __init__(self) -> None:
        self.log_file = get_config_dir() / "audit.jsonl"

    def log(self, event_type: str, **kwargs: Any) -> None:
        """Log a structured operation event. Never raises."""
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event_type,
            "details": kwargs
        }

        line = json.dumps(entry, default=str) + "\n"
        try:
            with self.log_file.open("a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            sys.stderr.write(f"[opscheck audit] Failed to write log: {e}\n")
            try:
                fallback = self.log_file.with_name("audit_fallback.log")
                with fallback.open("a", encoding="utf-8") as f:
                    f.write(line)
            except OSError:
                pass

def get_audit_log(last_n: int = 50) -> List[Dict[str, Any]]:
    """Retrieve the last N events from the audit log."""
    log_file = get_config_dir() / "audit.jsonl"
    if not log_file.exists():
        return []

    with log_file.open("r", encoding="utf-8") as f:
        lines = f.readlines()

    parsed = []
    for line in lines[-last_n:] if last_n > 0 else []:
        if not line.strip():
            continue
        try:
            parsed.append(json.loads(line))
        except json.JSONDecodeError:
            # torn write from an interrupted run
            continue
    return parsed
