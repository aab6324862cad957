"""OpenCode session history, read through the CLI.

Two CLI calls back the history views:
- ``opencode session list --format json``: the sessions of one directory.
- ``opencode export <sessionID>``: one session with its messages and parts.

Neither output format is contractual. The list has been seen wrapped in log
noise, with trailing commas, behind a byte-order mark and with localised keys,
so parsing degrades to an empty result plus a ``debug`` block instead of
failing the request.
"""

import json
import logging
import math
import os
import re
import time
from dataclasses import dataclass, field
from datetime import datetime

from .claude_format import (
    create_assistant_message,
    create_text_item,
    create_thinking_item,
    create_tool_result_item,
    create_tool_use_item,
    create_user_message,
    get_tool_result_timestamp,
    is_tool_part,
    ms_to_iso,
)
from .config import is_windows
from .core import CommandResult, ConversationSummary

logger = logging.getLogger(__name__)

_TRAILING_COMMA = re.compile(r",\s*([}\]])")

# Ordered accepted spellings per logical field; the first key present wins.
SESSION_FIELD_KEYS = {
    "id": ("id", "ID", "会话ID", "会话Id"),
    "title": ("title", "标题", "名称"),
    "updated": ("updated", "更新", "更新时间"),
    "created": ("created", "已创建", "创建", "创建时间"),
    "directory": ("directory", "目录", "路径", "工作目录"),
    "projectId": ("projectId", "项目ID", "项目Id"),
}


@dataclass
class SessionListParse:
    """Outcome of parsing the session list.

    ``kind`` is ``"array"`` for a bare list, ``"object"`` for an object (its
    ``sessions`` list is used when present) and ``"error"`` when the text was
    not JSON at all.
    """

    kind: str
    sessions: list[dict] = field(default_factory=list)
    error: str | None = None


@dataclass
class SessionRecord:
    id: str
    title: str
    updated: float | None
    created: float | None
    directory: str | None = None
    project_id: str | None = None


def clean_json_output(raw: str, opening: str = "[", closing: str = "]") -> str:
    """Cut the outermost ``opening``...``closing`` span out of noisy CLI output.

    Also drops a leading BOM and trailing commas before ``}``/``]``.
    """
    text = raw.strip().lstrip("\ufeff")
    first = text.find(opening)
    last = text.rfind(closing)
    if first != -1 and last != -1 and last > first:
        text = text[first:last + 1]
    return _TRAILING_COMMA.sub(r"\1", text)


def parse_session_list(raw: str) -> SessionListParse:
    cleaned = clean_json_output(raw, "[", "]")
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.error("Failed to parse session list: %s", e)
        return SessionListParse(kind="error", error=str(e))

    if isinstance(parsed, list):
        return SessionListParse(kind="array", sessions=[s for s in parsed if isinstance(s, dict)])
    if isinstance(parsed, dict):
        sessions = parsed.get("sessions")
        if isinstance(sessions, list):
            return SessionListParse(kind="object", sessions=[s for s in sessions if isinstance(s, dict)])
        return SessionListParse(kind="object")
    return SessionListParse(kind=type(parsed).__name__)


def first_present(record: dict, keys) -> object:
    """Return the value of the first key in ``keys`` that ``record`` has."""
    for key in keys:
        if key in record:
            return record[key]
    return None


def _finite(value: float) -> float | None:
    return value if math.isfinite(value) else None


def _to_ms(value) -> float | None:
    """Coerce a timestamp (ms number, numeric string or ISO string) to finite ms."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        try:
            return _finite(float(value))
        except OverflowError:
            return None
    if isinstance(value, str) and value.strip():
        try:
            return _finite(float(value))
        except ValueError:
            pass
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).timestamp() * 1000
        except ValueError:
            return None
    return None


def _safe_iso(ms: float | None) -> str:
    try:
        return ms_to_iso(ms or 0)
    except (ValueError, OSError, OverflowError):
        return ms_to_iso(0)


def extract_session(record: dict) -> SessionRecord:
    def text(name):
        value = first_present(record, SESSION_FIELD_KEYS[name])
        return value if isinstance(value, str) else None

    return SessionRecord(
        id=text("id") or "",
        title=text("title") or "",
        updated=_to_ms(first_present(record, SESSION_FIELD_KEYS["updated"])),
        created=_to_ms(first_present(record, SESSION_FIELD_KEYS["created"])),
        directory=text("directory"),
        project_id=text("projectId"),
    )


def normalize_directory(value: str, windows: bool | None = None) -> str:
    """Slash-normalise a directory for comparison (case-folded on Windows)."""
    if windows is None:
        windows = is_windows()
    normalized = value.replace("\\", "/").rstrip("/")
    return normalized.lower() if windows else normalized


def build_history_list(
    result: CommandResult,
    cwd: str,
    opencode_path: str,
    filter_path: str | None = None,
) -> dict:
    """Turn ``session list`` output into ``{"conversations": [...], "debug": {...}}``."""
    if not result.success or not result.stdout.strip():
        return {
            "conversations": [],
            "debug": {
                "count": 0,
                "cwd": cwd,
                "opencodePath": opencode_path,
                "rawHead": result.stdout.strip()[:200],
                "stderrHead": result.stderr.strip()[:200],
                "code": result.code,
            },
        }

    parsed = parse_session_list(result.stdout)
    records = [extract_session(s) for s in parsed.sessions]

    target = normalize_directory(filter_path) if filter_path else None
    has_directory = any(r.directory for r in records)
    if target and has_directory:
        records = [r for r in records if r.directory and normalize_directory(r.directory) == target]

    records = [r for r in records if r.id]
    records.sort(key=lambda r: r.updated or 0, reverse=True)

    conversations = []
    for r in records:
        preview = f"{r.title} • {r.directory}" if r.directory else r.title
        conversations.append(ConversationSummary(
            session_id=r.id,
            start_time=_safe_iso(r.created if r.created is not None else r.updated),
            last_time=_safe_iso(r.updated),
            message_count=0,
            preview=preview,
        ).to_dict())

    updated_values = [r.updated for r in records if r.updated is not None]
    return {
        "conversations": conversations,
        "debug": {
            "count": len(conversations),
            "newest": max(updated_values) if updated_values else None,
            "oldest": min(updated_values) if updated_values else None,
            "cwd": cwd,
            "opencodePath": opencode_path,
            "sampleDirs": [r.directory or "" for r in records[:5]],
            "rawHead": clean_json_output(result.stdout).strip()[:200],
            "stderrHead": result.stderr.strip()[:200],
            "code": result.code,
            "parseError": parsed.error,
            "dataLen": len(parsed.sessions),
            "dataType": parsed.kind,
            "firstKeys": ",".join(list(parsed.sessions[0].keys())[:10]) if parsed.sessions else "",
        },
    }


# ── Export conversion ────────────────────────────────────────────


def _now_ms() -> int:
    return int(time.time() * 1000)


def _build_user_message(session_id: str, parts: list, created_at: float) -> dict:
    content = []
    for part in parts:
        if isinstance(part, dict) and part.get("type") == "text":
            item = create_text_item(part.get("text"))
            if item:
                content.append(item)
    return create_user_message(session_id, content, timestamp=_safe_iso(created_at))


def _build_tool_result_message(session_id: str, part: dict) -> dict:
    state = part.get("state") or {}
    output = state.get("error") if state.get("status") == "error" else state.get("output")
    return create_user_message(
        session_id,
        [create_tool_result_item(part)],
        timestamp=_safe_iso(get_tool_result_timestamp(part)),
        tool_use_result={"output": output or "", "metadata": state.get("metadata")},
    )


def _build_assistant_messages(session_id: str, parts: list, created_at: float) -> list[dict]:
    """Split one assistant turn at every finished tool call.

    Content accumulated up to and including a tool_use is flushed as one
    assistant message, immediately followed by that tool's result.
    """
    messages = []
    content: list[dict] = []
    timestamp = _safe_iso(created_at)

    def flush():
        nonlocal content
        if content:
            messages.append(create_assistant_message(session_id, content, timestamp=timestamp))
            content = []

    for part in parts:
        if not isinstance(part, dict):
            continue
        part_type = part.get("type")

        if part_type == "text":
            item = create_text_item(part.get("text"))
            if item:
                content.append(item)
        elif part_type == "reasoning":
            item = create_thinking_item(part.get("text"))
            if item:
                content.append(item)
        elif is_tool_part(part):
            content.append(create_tool_use_item(part))
            if create_tool_result_item(part) is not None:
                flush()
                messages.append(_build_tool_result_message(session_id, part))
        # step-start, step-finish, patch, snapshot...: lifecycle markers, skipped

    flush()
    return messages


def convert_export_messages(messages: list) -> list[dict]:
    """Map exported ``{info, parts}`` entries onto timestamped protocol messages."""
    output = []
    for entry in messages:
        if not isinstance(entry, dict) or not isinstance(entry.get("info"), dict):
            logger.debug("Skipping malformed export entry: %r", entry)
            continue
        info = entry["info"]
        parts = entry.get("parts") if isinstance(entry.get("parts"), list) else []
        times = info.get("time") if isinstance(info.get("time"), dict) else {}
        created_at = _to_ms(times.get("created"))
        if created_at is None:
            created_at = _now_ms()
        session_id = info.get("sessionID") or "unknown"

        if info.get("role") == "user":
            output.append(_build_user_message(session_id, parts, created_at))
        else:
            output.extend(_build_assistant_messages(session_id, parts, created_at))
    return output


def build_conversation(session_id: str, raw: str) -> dict:
    """Turn ``opencode export`` output into the conversation detail payload."""
    parse_error = None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        try:
            data = json.loads(clean_json_output(raw, "{", "}"))
        except json.JSONDecodeError as e:
            logger.error("Failed to parse export of %s: %s", session_id, e)
            data = None
            parse_error = str(e)

    if not isinstance(data, dict):
        data = {}
        parse_error = parse_error or "export is not a JSON object"

    raw_messages = data.get("messages") if isinstance(data.get("messages"), list) else []
    messages = convert_export_messages(raw_messages)

    info = data.get("info") if isinstance(data.get("info"), dict) else {}
    times = info.get("time") if isinstance(info.get("time"), dict) else {}
    now = _now_ms()
    created = _to_ms(times.get("created"))
    updated = _to_ms(times.get("updated"))

    conversation = {
        "sessionId": session_id,
        "messages": messages,
        "metadata": {
            "startTime": _safe_iso(created if created is not None else now),
            "endTime": _safe_iso(updated if updated is not None else now),
            "messageCount": len(messages),
        },
    }
    if parse_error:
        conversation["debug"] = {"parseError": parse_error, "rawHead": raw.strip()[:200]}
    return conversation


class HistoryService:
    """Session list and export queries against the opencode CLI."""

    def __init__(self, runtime, opencode_path: str):
        self.runtime = runtime
        self.opencode_path = opencode_path

    async def list_histories(self, path: str | None = None) -> dict:
        cwd = path or os.getcwd()
        result = await self.runtime.run_command(
            self.opencode_path,
            ["session", "list", "--format", "json"],
            cwd=cwd,
        )
        return build_history_list(result, cwd, self.opencode_path, filter_path=path)

    async def load_conversation(self, session_id: str, path: str | None = None) -> dict | None:
        """Return the conversation, or None when opencode has no such session."""
        cwd = path or os.getcwd()
        result = await self.runtime.run_command(self.opencode_path, ["export", session_id], cwd=cwd)
        if not result.success or not result.stdout.strip():
            logger.info("Export of %s failed (code %s): %s", session_id, result.code, result.stderr.strip()[:200])
            return None
        return build_conversation(session_id, result.stdout)
