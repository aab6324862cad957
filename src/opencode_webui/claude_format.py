"""Translate opencode parts into the Claude-style message protocol.

opencode describes a turn as a list of parts (``text``, ``reasoning``,
``tool``...). The chat UI consumes the message shapes emitted by Claude's
``stream-json`` output instead, so every part is mapped onto one of:

- ``system``/``init``: session announcement, sent once per request
- ``assistant``: text, thinking and tool_use content items
- ``user``: tool_result content items (and the user's own prompt in history)
- ``result``: end-of-turn summary with the measured duration

Everything here is pure; no I/O.
"""

from datetime import datetime, timezone

TOOL_NAME_OVERRIDES = {
    "todowrite": "TodoWrite",
    "todoread": "TodoRead",
    "apply_patch": "ApplyPatch",
    "webfetch": "WebFetch",
}

EXIT_PLAN_MODE_MESSAGE = "Exit plan mode?"

FINISHED_STATUSES = ("completed", "error")


def _capitalize(segment: str) -> str:
    return segment[:1].upper() + segment[1:]


def to_claude_tool_name(tool: str) -> str:
    """Map an opencode tool id onto the display name the UI expects.

    >>> to_claude_tool_name("web_fetch")
    'WebFetch'
    >>> to_claude_tool_name("todowrite")
    'TodoWrite'
    """
    normalized = tool.lower()
    if normalized in TOOL_NAME_OVERRIDES:
        return TOOL_NAME_OVERRIDES[normalized]
    return "".join(_capitalize(segment) for segment in tool.replace("-", "_").split("_"))


def is_tool_part(part) -> bool:
    return isinstance(part, dict) and part.get("type") == "tool"


def is_exit_plan_mode_tool(part: dict) -> bool:
    tool = part.get("tool") if isinstance(part, dict) else None
    if not isinstance(tool, str):
        return False
    return tool.lower().replace("_", "").replace("-", "") == "exitplanmode"


def _state(part: dict) -> dict:
    state = part.get("state")
    return state if isinstance(state, dict) else {}


# ── Content items ────────────────────────────────────────────────


def create_text_item(text: str | None) -> dict | None:
    if not text:
        return None
    return {"type": "text", "text": text}


def create_thinking_item(thinking: str | None) -> dict | None:
    if not thinking:
        return None
    return {"type": "thinking", "thinking": thinking}


def create_tool_use_item(part: dict) -> dict:
    tool_input = _state(part).get("input")
    return {
        "type": "tool_use",
        "id": part.get("callID"),
        "name": to_claude_tool_name(str(part.get("tool") or "")),
        "input": tool_input if isinstance(tool_input, dict) else {},
    }


def create_tool_result_item(part: dict) -> dict | None:
    """Return the tool_result for a finished tool, or None while it is running.

    Exit-plan-mode calls are always answered with a rejection, whatever
    opencode reported.
    """
    if is_exit_plan_mode_tool(part):
        return {
            "type": "tool_result",
            "tool_use_id": part.get("callID"),
            "content": EXIT_PLAN_MODE_MESSAGE,
            "is_error": True,
        }

    state = _state(part)
    status = state.get("status")
    if status not in FINISHED_STATUSES:
        return None

    if status == "error":
        content = state.get("error") or ""
    else:
        content = state.get("output") or ""
    return {
        "type": "tool_result",
        "tool_use_id": part.get("callID"),
        "content": content if isinstance(content, str) else str(content),
        "is_error": status == "error",
    }


def create_tool_use_result(part: dict):
    """Build the ``toolUseResult`` side payload shown next to a tool result."""
    state = _state(part)
    if state.get("status") == "error":
        output = state.get("error") or ""
    else:
        output = state.get("output") or ""

    if part.get("tool") == "bash":
        return {
            "stdout": output,
            "stderr": "",
            "interrupted": False,
            "isImage": False,
        }
    if state.get("metadata"):
        return state["metadata"]
    return {"output": output}


def get_tool_result_timestamp(part: dict) -> int:
    """Ordering key (ms) for a tool result: end time once finished, else start."""
    state = _state(part)
    times = state.get("time") if isinstance(state.get("time"), dict) else {}
    if state.get("status") in FINISHED_STATUSES and times.get("end") is not None:
        return times["end"]
    return times.get("start") or 0


# ── Message envelopes ────────────────────────────────────────────


def create_init_message(
    session_id: str,
    cwd: str,
    permission_mode: str,
    tools: list[str] | None = None,
) -> dict:
    return {
        "type": "system",
        "subtype": "init",
        "model": "opencode",
        "session_id": session_id,
        "tools": list(tools or []),
        "cwd": cwd,
        "permissionMode": permission_mode,
        "apiKeySource": "opencode",
    }


def create_result_message(duration_ms: int) -> dict:
    return {
        "type": "result",
        "duration_ms": duration_ms,
        "total_cost_usd": 0,
        "usage": {
            "input_tokens": 0,
            "output_tokens": 0,
        },
    }


def create_assistant_message(session_id: str, content: list[dict], timestamp: str | None = None) -> dict:
    message = {
        "type": "assistant",
        "session_id": session_id,
        "message": {"content": content},
    }
    if timestamp:
        message["timestamp"] = timestamp
    return message


def create_user_message(
    session_id: str,
    content: list[dict] | str,
    timestamp: str | None = None,
    tool_use_result=None,
) -> dict:
    message = {
        "type": "user",
        "session_id": session_id,
        "message": {"content": content},
    }
    if tool_use_result is not None:
        message["toolUseResult"] = tool_use_result
    if timestamp:
        message["timestamp"] = timestamp
    return message


def ms_to_iso(ms: float) -> str:
    """Format a millisecond epoch timestamp the way JavaScript's toISOString does."""
    dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")
