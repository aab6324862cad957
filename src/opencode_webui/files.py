"""Read-only file access for the file canvas.

Every path is resolved against the request's working directory and rejected
when it would escape it.
"""

import base64
import logging
import os
import re
import time
from pathlib import Path

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 10 * 1024 * 1024
MAX_RECENT_FILES = 200
MAX_RECENT_DEPTH = 8

MIME_TYPES = {
    ".html": "text/html",
    ".htm": "text/html",
    ".css": "text/css",
    ".js": "text/javascript",
    ".ts": "text/typescript",
    ".json": "application/json",
    ".md": "text/markdown",
    ".txt": "text/plain",
    ".xml": "application/xml",
    ".svg": "image/svg+xml",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".ico": "image/x-icon",
    ".bmp": "image/bmp",
    ".pdf": "application/pdf",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".xls": "application/vnd.ms-excel",
    ".csv": "text/csv",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".doc": "application/msword",
    ".py": "text/x-python",
}

RENDERABLE_EXTENSIONS = {
    ".html", ".htm", ".md", ".txt", ".json", ".xml", ".css", ".js", ".ts",
    ".svg", ".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp", ".xlsx",
    ".xls", ".csv", ".py",
}

IGNORED_DIRECTORIES = {".git", "node_modules", "dist", "build", "out", ".next", ".cache"}


class FileTooLargeError(ValueError):
    def __init__(self, size: int):
        super().__init__(
            f"File too large ({size / 1024 / 1024:.2f}MB). "
            f"Maximum size is {MAX_FILE_SIZE // 1024 // 1024}MB"
        )
        self.size = size


def get_mime_type(extension: str) -> str:
    return MIME_TYPES.get(extension.lower(), "application/octet-stream")


def is_renderable_file(extension: str) -> bool:
    return extension.lower() in RENDERABLE_EXTENSIONS


def normalize_requested_path(requested: str) -> str:
    cleaned = requested.strip()
    cleaned = re.sub(r"^file://", "", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"^/?([A-Za-z]:)", r"\1", cleaned)
    cleaned = re.sub(r"^[\"']+|[\"']+$", "", cleaned)
    return cleaned.replace("\0", "")


def resolve_file_path(requested: str, working_directory: str | None) -> str | None:
    """Resolve ``requested`` inside ``working_directory``; None if it escapes."""
    if not working_directory:
        logger.warning("No working directory provided for file access")
        return None

    base = os.path.abspath(working_directory)
    resolved = os.path.abspath(os.path.join(base, normalize_requested_path(requested)))
    try:
        inside = os.path.commonpath([base, resolved]) == base
    except ValueError:
        # Different drives on Windows.
        inside = False
    if not inside:
        logger.warning("Attempted directory traversal: %s -> %s", requested, resolved)
        return None
    return resolved


def _encode(path: Path) -> str:
    return base64.b64encode(path.read_bytes()).decode("ascii")


def read_file_payload(path: str) -> dict:
    """Read a file into the canvas payload (``content`` for text, ``base64`` otherwise)."""
    file_path = Path(path)
    size = file_path.stat().st_size
    if size > MAX_FILE_SIZE:
        raise FileTooLargeError(size)

    mime_type = get_mime_type(file_path.suffix)
    logger.debug("Reading file: %s (%s, %d bytes)", path, mime_type, size)

    if mime_type.startswith("text/") or mime_type == "application/json":
        return {"success": True, "content": file_path.read_text(encoding="utf-8", errors="replace"), "mimeType": mime_type}

    if "excel" in mime_type or "spreadsheet" in mime_type:
        try:
            return {"success": True, "content": file_path.read_text(encoding="utf-8"), "mimeType": mime_type}
        except UnicodeDecodeError:
            pass

    return {"success": True, "base64": _encode(file_path), "mimeType": mime_type}


def file_info(requested: str, resolved: str) -> dict:
    file_path = Path(resolved)
    return {
        "path": requested,
        "name": file_path.name,
        "extension": file_path.suffix,
        "size": file_path.stat().st_size,
        "mimeType": get_mime_type(file_path.suffix),
    }


def collect_recent_files(base_directory: str, since_ms: float, max_depth: int) -> list[dict]:
    """Renderable files under ``base_directory`` modified since ``since_ms``."""
    results: list[dict] = []
    base = os.path.abspath(base_directory)

    def walk(directory: str, depth: int) -> None:
        if depth > max_depth or len(results) >= MAX_RECENT_FILES:
            return
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError as e:
            logger.debug("Cannot scan %s: %s", directory, e)
            return
        for entry in entries:
            if len(results) >= MAX_RECENT_FILES:
                return
            if entry.is_dir(follow_symlinks=False):
                if entry.name not in IGNORED_DIRECTORIES:
                    walk(entry.path, depth + 1)
                continue
            if not entry.is_file():
                continue
            extension = os.path.splitext(entry.name)[1]
            if not is_renderable_file(extension):
                continue
            stat = entry.stat()
            if stat.st_mtime * 1000 < since_ms:
                continue
            results.append({
                "path": os.path.relpath(entry.path, base).replace("\\", "/"),
                "name": entry.name,
                "extension": extension,
                "size": stat.st_size,
                "mimeType": get_mime_type(extension),
            })

    walk(base, 0)
    return results


def default_since_ms() -> float:
    return (time.time() - 5 * 60) * 1000
