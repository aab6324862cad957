"""opencode credential store (``<data home>/opencode/auth.json``)."""

import json
import logging
import os

from .config import get_auth_path

logger = logging.getLogger(__name__)


def read_auth_file() -> dict:
    path = get_auth_path()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Failed to read %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def write_auth_file(data: dict) -> None:
    """Write credentials readable by the owner only."""
    path = get_auth_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    os.chmod(path, 0o600)


def set_api_key(provider_id: str, key: str) -> None:
    data = read_auth_file()
    data[provider_id] = {"type": "api", "key": key}
    write_auth_file(data)
