"""Project directories offered by the UI.

Projects come from ``OPENCODE_PROJECTS`` (``;`` or ``,`` separated) followed by
the entries of ``projects.json``. They are addressed as ``project-N``, their
1-based position in that combined list, so reordering the store changes the
names of existing projects.
"""

import json
import logging
import os
import re
from pathlib import Path

from .config import get_projects_store_path
from .core import Project

logger = logging.getLogger(__name__)

_ENCODED_NAME = re.compile(r"^project-(\d+)$")


class ProjectError(ValueError):
    """A project path was rejected."""


def normalize_project_path(value: str) -> str:
    return str(Path(value).expanduser().resolve()).replace("\\", "/")


def _parse_env_projects(raw: str) -> list[str]:
    return [v.strip() for v in re.split(r"[;,]", raw) if v.strip()]


def _read_store(store_path: Path) -> list[str]:
    try:
        content = store_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    except OSError as e:
        logger.warning("Failed to read project store %s: %s", store_path, e)
        return []
    if not content.strip():
        return []
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        logger.warning("Ignoring corrupt project store %s: %s", store_path, e)
        return []
    projects = data.get("projects") if isinstance(data, dict) else None
    if not isinstance(projects, list):
        return []
    return [p for p in projects if isinstance(p, str) and p.strip()]


def load_projects() -> list[str]:
    """Return env and stored projects, deduplicated, first occurrence wins."""
    from_env = [normalize_project_path(p) for p in _parse_env_projects(os.environ.get("OPENCODE_PROJECTS", ""))]
    stored = [normalize_project_path(p) for p in _read_store(get_projects_store_path())]
    return list(dict.fromkeys(from_env + stored))


def _with_fallback(projects: list[str]) -> list[str]:
    return projects if projects else [os.getcwd().replace("\\", "/")]


def list_projects() -> list[Project]:
    return [
        Project(path=path.replace("\\", "/"), encoded_name=f"project-{index}")
        for index, path in enumerate(_with_fallback(load_projects()), 1)
    ]


def resolve_project_path(encoded_name: str) -> str | None:
    """Map ``project-N`` back to its directory, or None."""
    if not encoded_name:
        return None
    match = _ENCODED_NAME.match(encoded_name)
    if not match:
        return None
    index = int(match.group(1))
    projects = _with_fallback(load_projects())
    if index <= 0 or index > len(projects):
        return None
    return projects[index - 1]


def _write_store(store_path: Path, projects: list[str]) -> None:
    store_path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(store_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump({"projects": projects}, f, indent=2)
    os.chmod(store_path, 0o600)


def add_project(path: str, create: bool = True) -> Project:
    """Append a directory to the store, creating it when ``create`` is set."""
    target = normalize_project_path(path)
    target_path = Path(target)

    if not target_path.exists():
        if not create:
            raise ProjectError("Project path does not exist")
        target_path.mkdir(parents=True, exist_ok=True)
    elif not target_path.is_dir():
        raise ProjectError("Project path is not a directory")

    projects = load_projects()
    if target not in projects:
        projects.append(target)
        _write_store(get_projects_store_path(), projects)
        logger.info("Added project %s", target)

    return Project(path=target, encoded_name=f"project-{projects.index(target) + 1}")
