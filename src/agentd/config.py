"""
User configuration loaded from ~/.agentd/config.yaml.

Config file format:
    daemon:
      heartbeat_interval: 60      # seconds between health ticks
      spawn_timeout: 15           # seconds to wait for a session to report back
      restart_hang_timeout: 10
      update_command: "pip install -U agentd"

Anything missing falls back to the defaults in ``agentd.settings``.
"""

from pathlib import Path
from typing import Any, Dict

import yaml

from .settings import get_paths


def _config_path() -> Path:
    return get_paths().config_file


CONFIG_PATH = None  # tests may monkeypatch this to a specific file


def get_config_path() -> Path:
    return CONFIG_PATH if CONFIG_PATH is not None else _config_path()


def load_config() -> Dict[str, Any]:
    """Load the YAML config. Returns {} when missing or invalid."""
    path = get_config_path()
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except (yaml.YAMLError, OSError):
        return {}
    if not isinstance(data, dict):
        return {}
    return data


def save_config(data: Dict[str, Any]) -> None:
    path = get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


def get_daemon_config() -> Dict[str, Any]:
    """Return the ``daemon:`` section, dropping non-numeric timing values."""
    section = load_config().get("daemon")
    if not isinstance(section, dict):
        return {}
    result: Dict[str, Any] = {}
    for key, value in section.items():
        if key == "update_command":
            if isinstance(value, str) and value.strip():
                result[key] = value.strip()
        elif isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
            result[key] = value
    return result


def get_update_command(default: str) -> str:
    return get_daemon_config().get("update_command", default)
