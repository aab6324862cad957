"""Platform-aware settings and data directory resolution."""

import json
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8080
DEFAULT_HOST = "127.0.0.1"
DEFAULT_SERVER_HOST = "127.0.0.1"
DEFAULT_SERVER_PORT = "4096"


def is_windows() -> bool:
    return sys.platform == "win32"


def get_data_home() -> Path:
    """Return the per-user data home that opencode itself writes to."""
    env = os.environ.get("XDG_DATA_HOME")
    if env:
        return Path(env)

    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata)
        return Path.home() / "AppData" / "Roaming"
    elif sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support"
    else:  # Linux
        return Path.home() / ".local" / "share"


def get_auth_path() -> Path:
    """Return the path to opencode's credential store."""
    return get_data_home() / "opencode" / "auth.json"


def get_projects_store_path() -> Path:
    """Return the path to the web UI's project list."""
    env = os.environ.get("OPENCODE_WEBUI_HOME")
    if env:
        return Path(env) / "projects.json"

    return Path.home() / ".opencode-webui" / "projects.json"


def get_static_path() -> Path:
    """Return the directory holding the built front-end."""
    env = os.environ.get("OPENCODE_WEBUI_STATIC")
    if env:
        return Path(env)

    return Path(__file__).parent / "static"


def get_default_port() -> int:
    raw = os.environ.get("PORT", "")
    try:
        return int(raw) if raw else DEFAULT_PORT
    except ValueError:
        return DEFAULT_PORT


def get_debug_from_env() -> bool:
    value = os.environ.get("DEBUG", "")
    return value.lower() == "true" or value == "1"


def get_server_host() -> str:
    return os.environ.get("OPENCODE_SERVER_HOST") or DEFAULT_SERVER_HOST


def get_server_port() -> str:
    return os.environ.get("OPENCODE_SERVER_PORT") or DEFAULT_SERVER_PORT


def get_server_url() -> str | None:
    """Return the externally managed opencode server URL, if one is configured."""
    return os.environ.get("OPENCODE_SERVER_URL") or None


def get_mode_overrides() -> dict:
    """Parse OPENCODE_WEBUI_MODES into ``{mode: {"agent": ..., "permissions": {...}}}``."""
    raw = os.environ.get("OPENCODE_WEBUI_MODES", "").strip()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Ignoring invalid OPENCODE_WEBUI_MODES: %s", e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring OPENCODE_WEBUI_MODES: expected a JSON object")
        return {}
    return {k: v for k, v in data.items() if isinstance(v, dict)}


@dataclass
class AppConfig:
    """Settings shared by every request handler."""

    opencode_path: str = "opencode"
    opencode_model: str | None = None
    debug: bool = False
    static_path: Path | None = None
    server_host: str = DEFAULT_SERVER_HOST
    server_port: str = DEFAULT_SERVER_PORT
    server_url: str | None = None
    mode_overrides: dict = field(default_factory=dict)

    @classmethod
    def from_env(cls, **overrides) -> "AppConfig":
        config = cls(
            opencode_path=os.environ.get("OPENCODE_PATH") or "opencode",
            opencode_model=os.environ.get("OPENCODE_MODEL") or None,
            debug=get_debug_from_env(),
            static_path=get_static_path(),
            server_host=get_server_host(),
            server_port=get_server_port(),
            server_url=get_server_url(),
            mode_overrides=get_mode_overrides(),
        )
        for key, value in overrides.items():
            if value is not None:
                setattr(config, key, value)
        return config
