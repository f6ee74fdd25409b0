"""Client configuration: config directory, server URL, local file locations."""

import json
import os
from pathlib import Path
from typing import Any, Dict

DEFAULT_SERVER_URL = "http://localhost:4000"


def _config_dir() -> Path:
    """Platform-specific config directory (no admin). EVM_CONFIG_DIR overrides it."""
    override = os.environ.get("EVM_CONFIG_DIR", "").strip()
    if override:
        return Path(override)
    if os.name == "nt":
        base = os.environ.get("APPDATA", os.path.expanduser("~"))
        return Path(base) / "DotEVM"
    if os.environ.get("XDG_CONFIG_HOME"):
        return Path(os.environ["XDG_CONFIG_HOME"]) / "dotevm"
    return Path.home() / ".config" / "dotevm"


def get_config_path() -> Path:
    """Path to config.json."""
    d = _config_dir()
    d.mkdir(parents=True, exist_ok=True)
    return d / "config.json"


def get_database_path() -> Path:
    """Path to the local SQLite database."""
    d = _config_dir()
    d.mkdir(parents=True, exist_ok=True)
    return d / "evm.db"


def get_session_path() -> Path:
    """Path to the session record (email, user id, access token)."""
    d = _config_dir()
    d.mkdir(parents=True, exist_ok=True)
    return d / "session.json"


def get_log_path() -> Path:
    return _config_dir() / "dotevm.log"


def get_staging_path(project_id: int) -> Path:
    """Per-project staging record."""
    d = _config_dir() / "projects" / str(project_id)
    d.mkdir(parents=True, exist_ok=True)
    return d / "staging.json"


def _load() -> Dict[str, Any]:
    path = get_config_path()
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return data if isinstance(data, dict) else {}
    except (json.JSONDecodeError, OSError):
        return {}


def get_server_url() -> str:
    """Remote store base URL: EVM_SERVER_URL, then config.json, then the default."""
    env = os.environ.get("EVM_SERVER_URL", "").strip()
    if env:
        return env.rstrip("/")
    raw = (_load().get("server_url") or "").strip()
    return (raw or DEFAULT_SERVER_URL).rstrip("/")


def set_server_url(url: str) -> None:
    """Persist the remote store base URL."""
    data = _load()
    data["server_url"] = (url or "").strip()
    get_config_path().write_text(json.dumps(data, indent=2), encoding="utf-8")
