"""Drive ``opencode run`` for one chat submit and stream it back as NDJSON.

Each line written to the client is one of::

    {"type": "claude_json", "data": <protocol message>}
    {"type": "error", "error": "..."}
    {"type": "aborted"}
    {"type": "done"}

``done`` is always the last line and appears exactly once.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator

from .claude_format import (
    create_assistant_message,
    create_init_message,
    create_result_message,
    create_text_item,
    create_thinking_item,
    create_tool_result_item,
    create_tool_use_item,
    create_tool_use_result,
    create_user_message,
)
from .core import ChatRequest, RequestState

logger = logging.getLogger(__name__)

PERMISSION_ALLOW_ALL = {
    "read": "allow",
    "edit": "allow",
    "glob": "allow",
    "grep": "allow",
    "list": "allow",
    "bash": "allow",
    "task": "allow",
    "external_directory": "allow",
    "todowrite": "allow",
    "todoread": "allow",
    "webfetch": "allow",
    "websearch": "allow",
    "codesearch": "allow",
    "lsp": "allow",
    "doom_loop": "allow",
    "skill": "allow",
}

PERMISSION_DENY_ALL = {"*": "deny"}

# Streaming responses cannot answer interactive prompts.
ALWAYS_DENIED_TOOLS = ("question",)


@dataclass
class ModePolicy:
    """Which opencode agent runs a permission mode and what its tools may do."""

    agent: str
    permissions: dict[str, str] = field(default_factory=dict)

    def permission_env(self) -> str:
        policy = dict(self.permissions)
        for tool in ALWAYS_DENIED_TOOLS:
            policy[tool] = "deny"
        return json.dumps(policy)


DEFAULT_MODE_POLICIES = {
    "plan": ModePolicy(agent="plan", permissions=PERMISSION_DENY_ALL),
    "default": ModePolicy(agent="build", permissions=PERMISSION_DENY_ALL),
    "acceptEdits": ModePolicy(agent="build", permissions=PERMISSION_ALLOW_ALL),
}


def build_mode_policies(overrides: dict | None = None) -> dict[str, ModePolicy]:
    """Merge ``{mode: {"agent": ..., "permissions": {...}}}`` over the defaults."""
    policies = dict(DEFAULT_MODE_POLICIES)
    for mode, raw in (overrides or {}).items():
        base = policies.get(mode, DEFAULT_MODE_POLICIES["default"])
        agent = raw.get("agent") if isinstance(raw.get("agent"), str) else base.agent
        permissions = raw.get("permissions") if isinstance(raw.get("permissions"), dict) else base.permissions
        policies[mode] = ModePolicy(agent=agent, permissions=permissions)
    return policies


def encode_ndjson(payload: dict) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n"


def _claude_json(data: dict) -> dict:
    return {"type": "claude_json", "data": data}


class ChatTurn:
    """State machine for one request: pending -> streaming -> completed | errored | aborted.

    Holds everything that is accumulated while reading ``opencode run
    --format json`` output and turns CLI events into response payloads.
    """

    def __init__(self, request: ChatRequest, state: RequestState | None = None):
        self.request = request
        self.state = state
        self.status = "pending"
        self.session_id = request.session_id
        self.init_sent = False
        self.error_text = ""
        self.stderr_text = ""
        self.started_at = time.monotonic()
        self._buffer = ""

    # ── Input ────────────────────────────────────────────────────

    def feed(self, text: str) -> list[dict]:
        """Consume a stdout chunk; only complete lines are parsed."""
        self.status = "streaming"
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        payloads = []
        for line in lines:
            payloads.extend(self.handle_line(line))
        return payloads

    def feed_stderr(self, text: str) -> None:
        if text.strip():
            self.stderr_text += text
            logger.debug("opencode stderr: %s", text.rstrip())

    def flush(self) -> list[dict]:
        """Parse whatever is left in the line buffer after stdout closed."""
        rest, self._buffer = self._buffer, ""
        return self.handle_line(rest)

    def handle_line(self, line: str) -> list[dict]:
        line = line.strip()
        if not line:
            return []
        try:
            event = json.loads(line)
        except json.JSONDecodeError as e:
            logger.debug("Skipping unparseable opencode line %r: %s", line[:200], e)
            return []
        if not isinstance(event, dict):
            logger.debug("Skipping non-object opencode line %r", line[:200])
            return []
        return self.handle_event(event)

    def handle_event(self, event: dict) -> list[dict]:
        payloads = []

        event_session = event.get("sessionID")
        session_id = event_session if isinstance(event_session, str) and event_session else self.session_id
        if session_id and not self.session_id:
            self.session_id = session_id
            if self.state is not None:
                self.state.session_id = session_id
        if session_id:
            init = self.init_payload(session_id)
            if init:
                payloads.append(init)

        event_type = event.get("type")
        part = event.get("part") if isinstance(event.get("part"), dict) else None

        if event_type in ("text", "reasoning"):
            if not part or not session_id:
                return payloads
            text = part.get("text")
            if event_type == "text":
                item = create_text_item(text)
            else:
                item = create_thinking_item(text)
            if item:
                payloads.append(_claude_json(create_assistant_message(session_id, [item])))

        elif event_type == "tool_use":
            if not part or not session_id:
                return payloads
            payloads.append(_claude_json(create_assistant_message(session_id, [create_tool_use_item(part)])))
            result_item = create_tool_result_item(part)
            if result_item:
                payloads.append(_claude_json(create_user_message(
                    session_id,
                    [result_item],
                    tool_use_result=create_tool_use_result(part),
                )))

        elif event_type == "error":
            error = event.get("error")
            if isinstance(error, str):
                message = error
            else:
                message = json.dumps(error if error is not None else "Unknown error")
            self.error_text = f"{self.error_text}\n{message}" if self.error_text else message
            payloads.append({"type": "error", "error": message})

        return payloads

    # ── Output ───────────────────────────────────────────────────

    def init_payload(self, session_id: str) -> dict | None:
        """Return the init message the first time only."""
        if self.init_sent:
            return None
        self.init_sent = True
        return _claude_json(create_init_message(
            session_id=session_id,
            cwd=self.request.working_directory or "",
            permission_mode=self.request.permission_mode or "default",
            tools=[],
        ))

    def finish(self, exit_code: int, aborted: bool = False) -> list[dict]:
        """Payloads to send after the process exited (``done`` excluded)."""
        payloads = []
        payloads.extend(self.flush())

        if aborted:
            self.status = "aborted"
            payloads.append({"type": "aborted"})
            return payloads

        if exit_code != 0 and not self.error_text:
            fallback = self.stderr_text.strip() or f"opencode exited with code {exit_code}"
            self.error_text = fallback
            payloads.append({"type": "error", "error": fallback})

        if self.session_id:
            init = self.init_payload(self.session_id)
            if init:
                payloads.append(init)
            payloads.append(_claude_json(create_result_message(self.elapsed_ms())))

        self.status = "errored" if self.error_text else "completed"
        return payloads

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


class RequestRegistry:
    """In-flight chat requests keyed by the client's request id."""

    def __init__(self):
        self._states: dict[str, RequestState] = {}

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    def get(self, request_id: str) -> RequestState | None:
        return self._states.get(request_id)

    def ids(self) -> list[str]:
        return list(self._states)

    def register(self, request_id: str, state: RequestState) -> None:
        if request_id in self._states:
            logger.warning("Replacing in-flight request %s", request_id)
            self.abort(request_id)
        self._states[request_id] = state

    def unregister(self, request_id: str, state: RequestState) -> None:
        """Drop the entry only if it still belongs to ``state``."""
        if self._states.get(request_id) is state:
            del self._states[request_id]

    def abort(self, request_id: str) -> bool:
        """Cancel a request. Returns False when it is unknown or already finished."""
        state = self._states.pop(request_id, None)
        if state is None:
            return False
        state.cancel_event.set()
        if state.kill is not None:
            state.kill()
        return True


class ChatOrchestrator:
    """Runs chat requests against the opencode CLI."""

    def __init__(
        self,
        runtime,
        opencode_path: str,
        default_model: str | None = None,
        mode_policies: dict[str, ModePolicy] | None = None,
        registry: RequestRegistry | None = None,
    ):
        self.runtime = runtime
        self.opencode_path = opencode_path
        self.default_model = default_model
        self.mode_policies = mode_policies or dict(DEFAULT_MODE_POLICIES)
        self.registry = registry if registry is not None else RequestRegistry()

    def policy_for(self, permission_mode: str | None) -> ModePolicy:
        return self.mode_policies.get(permission_mode or "default") or self.mode_policies["default"]

    def build_args(self, request: ChatRequest) -> list[str]:
        args = ["run", "--format", "json"]
        model = (request.model or "").strip() or self.default_model
        if model:
            args.extend(["--model", model])
        if request.session_id:
            args.extend(["--session", request.session_id])
        args.extend(["--agent", self.policy_for(request.permission_mode).agent])
        args.append(request.message)
        return args

    def build_env(self, request: ChatRequest) -> dict[str, str]:
        return {
            "OPENCODE_PERMISSION": self.policy_for(request.permission_mode).permission_env(),
            "OPENCODE_CLIENT": "cli",
        }

    def abort(self, request_id: str) -> bool:
        aborted = self.registry.abort(request_id)
        if aborted:
            logger.info("Aborted request %s", request_id)
        return aborted

    async def stream(self, request: ChatRequest) -> AsyncIterator[dict]:
        """Yield response payloads for one request, always ending with ``done``."""
        state = RequestState(working_directory=request.working_directory)
        self.registry.register(request.request_id, state)
        process = None
        try:
            try:
                turn = ChatTurn(request, state)
                process = await self.runtime.run_command_stream(
                    self.opencode_path,
                    self.build_args(request),
                    env=self.build_env(request),
                    cwd=request.working_directory,
                    cancel_event=state.cancel_event,
                )
                state.kill = process.kill

                async for chunk in process:
                    if chunk.source == "stderr":
                        turn.feed_stderr(chunk.text)
                        continue
                    for payload in turn.feed(chunk.text):
                        yield payload

                code = await process.wait()
                for payload in turn.finish(code, aborted=state.cancel_event.is_set()):
                    yield payload
                logger.debug("Request %s %s (exit %s)", request.request_id, turn.status, code)
            except Exception as e:
                logger.exception("Chat request %s failed", request.request_id)
                yield {"type": "error", "error": str(e)}
            yield {"type": "done"}
        finally:
            if process is not None and process.running:
                # Client went away mid-stream.
                process.kill()
            self.registry.unregister(request.request_id, state)

    async def stream_ndjson(self, request: ChatRequest) -> AsyncIterator[str]:
        async for payload in self.stream(request):
            yield encode_ndjson(payload)
