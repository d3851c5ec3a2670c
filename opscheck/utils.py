"""
Core utilities for opscheck.
"""
import hashlib
import os
import shutil
import socket
from datetime import datetime
from pathlib import Path
from typing import Optional


def is_root() -> bool:
    """Return True if running with an effective uid of 0."""
    return hasattr(os, "geteuid") and os.geteuid() == 0

def hostname() -> str:
    return socket.gethostname()

def which(command: str) -> Optional[str]:
    """Locate an executable on PATH."""
    return shutil.which(command)

def sha256_file(path: Path) -> str:
    """Stream a file and return its SHA-256 hex digest."""
    hasher = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            hasher.update(chunk)
    return hasher.hexdigest()

def human_size(nbytes: int) -> str:
    """Convert bytes to a human-readable string (e.g. 1.2 MiB)."""
    if nbytes == 0:
        return "0 B"
    suffixes = ["B", "KiB", "MiB", "GiB", "TiB", "PiB"]
    i = 0
    size = float(nbytes)
    while size >= 1024 and i < len(suffixes) - 1:
        size /= 1024.0
        i += 1
    if i == 0:
        return f"{int(size)} {suffixes[i]}"
    return f"{size:.1f} {suffixes[i]}"

def timestamp_id(now: Optional[datetime] = None) -> str:
    """Return a YYYYMMDD_HHMMSS formatted string."""
    return (now or datetime.now()).strftime("%Y%m%d_%H%M%S")

def human_age(seconds: float) -> str:
    """Render an age in seconds as e.g. '3d 4h' or '12m'."""
    seconds = max(0, int(seconds))
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes = rem // 60
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
