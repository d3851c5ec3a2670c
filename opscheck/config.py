"""
Configuration loading and persistence for opscheck.
"""
import json
import os
import stat
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .errors import ConfigError
from .models import AppConfig

APP_NAME = "opscheck"
CONFIG_ENV = "OPSCHECK_CONFIG"

def get_config_dir() -> Path:
    """Returns the XDG configuration directory for opscheck."""
    xdg_config = os.getenv("XDG_CONFIG_HOME")
    if xdg_config:
        base_dir = Path(xdg_config)
    else:
        base_dir = Path.home() / ".config"

    config_dir = base_dir / APP_NAME
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir

def get_config_path() -> Path:
    """Return the config file path, honouring $OPSCHECK_CONFIG."""
    override = os.getenv(CONFIG_ENV)
    if override:
        return Path(override)
    return get_config_dir() / "config.json"

def apply_secure_permissions(path: Path) -> None:
    """Owner read/write only."""
    path.chmod(stat.S_IRUSR | stat.S_IWUSR)

def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load the config file, falling back to defaults when it does not exist."""
    path = path or get_config_path()
    if not path.exists():
        return AppConfig()

    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to read config '{path}': {e}") from e

    try:
        return AppConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config '{path}': {e}") from e

def save_config(config: AppConfig, path: Optional[Path] = None) -> Path:
    """Write the config as JSON and return where it went."""
    path = path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        f.write(config.model_dump_json(indent=2))
    apply_secure_permissions(path)
    return path
