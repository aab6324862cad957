"""Shared test fixtures for opencode-webui."""

import asyncio
import json

import pytest

from opencode_webui.config import AppConfig
from opencode_webui.core import CommandResult


def event_line(**event) -> str:
    return json.dumps(event) + "\n"


def tool_part(call_id="call_1", tool="read", status="completed", **state):
    """Build an opencode tool part; extra keyword arguments land in ``state``."""
    state.setdefault("input", {"filePath": "/tmp/a.py"})
    state.setdefault("time", {"start": 1_700_000_000_000, "end": 1_700_000_001_000})
    return {"type": "tool", "callID": call_id, "tool": tool, "state": {"status": status, **state}}


class FakeStream:
    """Stand-in for runtime.CommandStream with scripted output."""

    def __init__(self, chunks=(), code=0, hold=False):
        self.chunks = list(chunks)
        self.code = code
        self.hold = hold
        self.running = True
        self.kill_count = 0
        self._killed = asyncio.Event()

    def kill(self):
        if not self.running:
            return
        self.kill_count += 1
        self.running = False
        self.code = -9
        self._killed.set()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self.chunks:
            if self._killed.is_set():
                return
            yield chunk
            await asyncio.sleep(0)
        if self.hold:
            await self._killed.wait()

    async def wait(self):
        self.running = False
        return self.code


class FakeRuntime:
    """Records CLI invocations and answers them from canned results."""

    def __init__(self, results=None, stream=None):
        self.results = results or {}
        self.stream = stream
        self.calls = []
        self.stream_calls = []

    async def find_executable(self, name):
        return []

    async def run_command(self, command, args, env=None, cwd=None):
        self.calls.append({"command": command, "args": list(args), "cwd": cwd})
        return self.results.get(tuple(args[:2]), CommandResult(success=False, code=1, stderr="unexpected call"))

    async def run_command_stream(self, command, args, env=None, cwd=None, cancel_event=None):
        self.stream_calls.append({"command": command, "args": list(args), "env": env, "cwd": cwd})
        stream = self.stream if self.stream is not None else FakeStream()
        if cancel_event is not None and cancel_event.is_set():
            stream.kill()
        return stream


@pytest.fixture
def app_config(tmp_path):
    return AppConfig(opencode_path="opencode", static_path=tmp_path / "static", server_url="http://opencode.test")


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep the project store and credentials inside the test's tmp dir."""
    monkeypatch.setenv("OPENCODE_WEBUI_HOME", str(tmp_path / "webui-home"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data-home"))
    monkeypatch.delenv("OPENCODE_PROJECTS", raising=False)
    monkeypatch.delenv("OPENCODE_WEBUI_MODES", raising=False)
    return tmp_path


@pytest.fixture
def session_list_output():
    """``opencode session list --format json`` output for two directories."""
    return json.dumps([
        {
            "id": "ses_old",
            "title": "Fix login",
            "updated": 1_700_000_000_000,
            "created": 1_699_999_000_000,
            "directory": "/Users/testuser/dev/api-server",
        },
        {
            "id": "ses_new",
            "title": "Add tests",
            "updated": 1_700_000_500_000,
            "created": 1_700_000_100_000,
            "directory": "/Users/testuser/dev/api-server/",
        },
        {
            "id": "ses_other",
            "title": "Elsewhere",
            "updated": 1_700_000_900_000,
            "created": 1_700_000_800_000,
            "directory": "/Users/testuser/dev/webapp",
        },
    ])


@pytest.fixture
def export_output():
    """``opencode export`` output: one user turn and one assistant turn with two tools."""
    return json.dumps({
        "info": {"id": "ses_001", "time": {"created": 1_737_532_800_000, "updated": 1_737_534_600_000}},
        "messages": [
            {
                "info": {"role": "user", "sessionID": "ses_001", "time": {"created": 1_737_532_800_000}},
                "parts": [
                    {"type": "text", "text": "Why is /api/users returning 500?"},
                    {"type": "text", "text": ""},
                ],
            },
            {
                "info": {"role": "assistant", "sessionID": "ses_001", "time": {"created": 1_737_532_830_000}},
                "parts": [
                    {"type": "step-start", "snapshot": "abc123"},
                    {"type": "reasoning", "text": "Check the query first."},
                    {"type": "text", "text": "Let me search for the query."},
                    tool_part(
                        call_id="call_grep",
                        tool="grep",
                        output="src/db.ts:15: SELECT * FROM users",
                        metadata={"matches": 1},
                        time={"start": 1_737_532_831_000, "end": 1_737_532_832_000},
                    ),
                    tool_part(
                        call_id="call_bash",
                        tool="bash",
                        status="error",
                        error="command not found: psql",
                        time={"start": 1_737_532_833_000, "end": 1_737_532_834_000},
                    ),
                    {"type": "text", "text": "The query has a typo."},
                    {"type": "step-finish"},
                ],
            },
        ],
    })
