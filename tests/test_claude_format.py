"""Tests for the opencode -> Claude message translation."""

import pytest

from opencode_webui.claude_format import (
    EXIT_PLAN_MODE_MESSAGE,
    create_init_message,
    create_result_message,
    create_text_item,
    create_thinking_item,
    create_tool_result_item,
    create_tool_use_item,
    create_tool_use_result,
    create_user_message,
    get_tool_result_timestamp,
    ms_to_iso,
    to_claude_tool_name,
)

from conftest import tool_part


class TestToolNames:
    @pytest.mark.parametrize(
        "tool, expected",
        [
            ("web_fetch", "WebFetch"),
            ("todowrite", "TodoWrite"),
            ("TodoWrite", "TodoWrite"),
            ("todoread", "TodoRead"),
            ("apply_patch", "ApplyPatch"),
            ("webfetch", "WebFetch"),
            ("read", "Read"),
            ("bash", "Bash"),
            ("multi-edit", "MultiEdit"),
            ("mcp_github_create_issue", "McpGithubCreateIssue"),
            ("exit_plan_mode", "ExitPlanMode"),
        ],
    )
    def test_canonical_names(self, tool, expected):
        assert to_claude_tool_name(tool) == expected

    def test_override_is_not_plain_capitalisation(self):
        assert to_claude_tool_name("todowrite") != "Todowrite"


class TestContentItems:
    def test_empty_text_produces_nothing(self):
        assert create_text_item("") is None
        assert create_text_item(None) is None
        assert create_thinking_item("") is None

    def test_text_and_thinking(self):
        assert create_text_item("hello") == {"type": "text", "text": "hello"}
        assert create_thinking_item("hmm") == {"type": "thinking", "thinking": "hmm"}

    def test_tool_use_item(self):
        item = create_tool_use_item(tool_part(call_id="c1", tool="web_fetch", input={"url": "https://x"}))
        assert item == {"type": "tool_use", "id": "c1", "name": "WebFetch", "input": {"url": "https://x"}}

    def test_tool_use_item_without_input(self):
        part = tool_part()
        del part["state"]["input"]
        assert create_tool_use_item(part)["input"] == {}

    def test_completed_tool_result(self):
        item = create_tool_result_item(tool_part(call_id="c1", output="file contents"))
        assert item == {"type": "tool_result", "tool_use_id": "c1", "content": "file contents", "is_error": False}

    def test_completed_tool_result_defaults_to_empty_output(self):
        assert create_tool_result_item(tool_part())["content"] == ""

    def test_error_tool_result(self):
        item = create_tool_result_item(tool_part(status="error", error="permission denied"))
        assert item["content"] == "permission denied"
        assert item["is_error"] is True

    def test_running_tool_has_no_result(self):
        assert create_tool_result_item(tool_part(status="running")) is None

    @pytest.mark.parametrize("tool", ["exit_plan_mode", "exitplanmode", "ExitPlanMode", "exit-plan-mode"])
    def test_exit_plan_mode_is_always_rejected(self, tool):
        item = create_tool_result_item(tool_part(call_id="plan", tool=tool, output="approved"))
        assert item == {
            "type": "tool_result",
            "tool_use_id": "plan",
            "content": EXIT_PLAN_MODE_MESSAGE,
            "is_error": True,
        }


class TestToolUseResult:
    def test_bash_output(self):
        result = create_tool_use_result(tool_part(tool="bash", output="ok"))
        assert result == {"stdout": "ok", "stderr": "", "interrupted": False, "isImage": False}

    def test_metadata_preferred(self):
        assert create_tool_use_result(tool_part(tool="grep", metadata={"matches": 3})) == {"matches": 3}

    def test_plain_output(self):
        assert create_tool_use_result(tool_part(status="error", error="boom")) == {"output": "boom"}


class TestTimestamps:
    def test_finished_tools_use_end_time(self):
        assert get_tool_result_timestamp(tool_part(time={"start": 10, "end": 20})) == 20
        assert get_tool_result_timestamp(tool_part(status="error", time={"start": 10, "end": 20})) == 20

    def test_running_tools_use_start_time(self):
        assert get_tool_result_timestamp(tool_part(status="running", time={"start": 10})) == 10

    def test_ms_to_iso(self):
        assert ms_to_iso(0) == "1970-01-01T00:00:00.000Z"
        assert ms_to_iso(1_737_532_800_123) == "2025-01-22T08:00:00.123Z"


class TestEnvelopes:
    def test_init_message(self):
        message = create_init_message("ses_1", "/work", "plan")
        assert message["type"] == "system"
        assert message["subtype"] == "init"
        assert message["session_id"] == "ses_1"
        assert message["cwd"] == "/work"
        assert message["permissionMode"] == "plan"
        assert message["tools"] == []

    def test_result_message(self):
        message = create_result_message(1234)
        assert message == {
            "type": "result",
            "duration_ms": 1234,
            "total_cost_usd": 0,
            "usage": {"input_tokens": 0, "output_tokens": 0},
        }

    def test_user_message_timestamp_is_optional(self):
        assert "timestamp" not in create_user_message("s", [])
        assert create_user_message("s", [], timestamp="2025-01-01T00:00:00.000Z")["timestamp"] == "2025-01-01T00:00:00.000Z"
