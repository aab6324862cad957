"""Tests for session list parsing and export conversion."""

import json

import pytest

from opencode_webui.core import CommandResult
from opencode_webui.history import (
    HistoryService,
    build_conversation,
    build_history_list,
    clean_json_output,
    extract_session,
    normalize_directory,
    parse_session_list,
)

from conftest import FakeRuntime


def ok(stdout):
    return CommandResult(success=True, code=0, stdout=stdout)


class TestCleanJsonOutput:
    def test_trailing_comma(self):
        assert json.loads(clean_json_output('[{"id": "a"},]')) == [{"id": "a"}]

    def test_log_noise_and_bom(self):
        raw = '\ufeffINFO loading sessions\n[{"id": "a", "tags": [1, 2,],}]\nbye'
        assert json.loads(clean_json_output(raw)) == [{"id": "a", "tags": [1, 2]}]

    def test_object_brackets(self):
        assert json.loads(clean_json_output('noise {"a": 1,} tail', "{", "}")) == {"a": 1}


class TestParseSessionList:
    def test_array(self):
        parsed = parse_session_list('[{"id": "a"}, "junk"]')
        assert parsed.kind == "array"
        assert parsed.sessions == [{"id": "a"}]

    def test_object_without_list(self):
        parsed = parse_session_list('{"count": 0}')
        assert parsed.kind == "object"
        assert parsed.sessions == []

    def test_garbage(self):
        parsed = parse_session_list("No sessions yet")
        assert parsed.kind == "error"
        assert parsed.error


class TestExtractSession:
    def test_localized_keys(self):
        record = extract_session({
            "会话ID": "ses_zh",
            "标题": "修复登录",
            "更新时间": "2025-01-22T08:00:00.000Z",
            "创建": 1_737_532_000_000,
            "目录": "/home/li/proj",
        })
        assert record.id == "ses_zh"
        assert record.title == "修复登录"
        assert record.updated == 1_737_532_800_000
        assert record.created == 1_737_532_000_000
        assert record.directory == "/home/li/proj"

    def test_first_key_wins(self):
        assert extract_session({"id": "a", "ID": "b"}).id == "a"

    def test_numeric_string_timestamp(self):
        assert extract_session({"id": "a", "updated": "1700000000000"}).updated == 1_700_000_000_000

    @pytest.mark.parametrize("raw", ['{"id": "a", "updated": 1e400}', '{"id": "a", "updated": "NaN"}', '{"id": "a", "updated": "-Infinity"}'])
    def test_non_finite_timestamp_dropped(self, raw):
        assert extract_session(json.loads(raw)).updated is None

    def test_huge_integer_timestamp_dropped(self):
        assert extract_session({"id": "a", "created": 10 ** 400}).created is None


@pytest.mark.parametrize(
    "value, windows, expected",
    [
        ("/a/b/", False, "/a/b"),
        ("C:\\Users\\Dev\\Proj\\", True, "c:/users/dev/proj"),
        ("/Users/Dev", False, "/Users/Dev"),
    ],
)
def test_normalize_directory(value, windows, expected):
    assert normalize_directory(value, windows=windows) == expected


class TestBuildHistoryList:
    def test_filters_by_directory_and_sorts(self, session_list_output):
        result = build_history_list(ok(session_list_output), "/cwd", "opencode", "/Users/testuser/dev/api-server")

        ids = [c["sessionId"] for c in result["conversations"]]
        assert ids == ["ses_new", "ses_old"]
        first = result["conversations"][0]
        assert first["messageCount"] == 0
        assert first["lastMessagePreview"] == "Add tests • /Users/testuser/dev/api-server/"
        assert first["startTime"] == "2023-11-14T22:15:00.000Z"
        assert result["debug"]["count"] == 2
        assert result["debug"]["dataType"] == "array"
        assert result["debug"]["dataLen"] == 3

    def test_no_filter_returns_everything(self, session_list_output):
        result = build_history_list(ok(session_list_output), "/cwd", "opencode")
        assert [c["sessionId"] for c in result["conversations"]] == ["ses_other", "ses_new", "ses_old"]

    def test_filter_skipped_when_no_record_has_directory(self):
        output = json.dumps([{"id": "a", "title": "t", "updated": 2}, {"id": "b", "updated": 1}])
        result = build_history_list(ok(output), "/cwd", "opencode", "/anywhere")
        assert [c["sessionId"] for c in result["conversations"]] == ["a", "b"]
        assert result["conversations"][0]["lastMessagePreview"] == "t"

    def test_records_without_id_dropped(self):
        result = build_history_list(ok('[{"title": "orphan"}, {"id": "x"},]'), "/cwd", "opencode")
        assert [c["sessionId"] for c in result["conversations"]] == ["x"]

    def test_start_time_falls_back_to_updated(self):
        result = build_history_list(ok('[{"id": "x", "updated": 1000}]'), "/cwd", "opencode")
        assert result["conversations"][0]["startTime"] == "1970-01-01T00:00:01.000Z"

    def test_non_finite_updated_stays_json_safe(self):
        output = '[{"id":"ses_a","title":"t","updated":1e400,"created":1}]'
        result = build_history_list(ok(output), "/cwd", "opencode")

        assert result["debug"]["newest"] is None
        assert result["debug"]["oldest"] is None
        assert result["conversations"][0]["startTime"] == "1970-01-01T00:00:00.001Z"
        json.dumps(result, allow_nan=False)

    def test_failed_command(self):
        result = build_history_list(
            CommandResult(success=False, code=127, stderr="opencode: not found"), "/cwd", "opencode"
        )
        assert result["conversations"] == []
        assert result["debug"]["code"] == 127
        assert result["debug"]["stderrHead"] == "opencode: not found"

    def test_unparseable_output(self):
        result = build_history_list(ok("Error: database locked"), "/cwd", "opencode")
        assert result["conversations"] == []
        assert result["debug"]["dataType"] == "error"
        assert result["debug"]["parseError"]


class TestBuildConversation:
    def test_export_ordering(self, export_output):
        conversation = build_conversation("ses_001", export_output)
        messages = conversation["messages"]

        assert [m["type"] for m in messages] == ["user", "assistant", "user", "assistant", "user", "assistant"]

        assert messages[0]["message"]["content"] == [{"type": "text", "text": "Why is /api/users returning 500?"}]
        assert messages[0]["timestamp"] == "2025-01-22T08:00:00.000Z"

        first_turn = messages[1]["message"]["content"]
        assert [c["type"] for c in first_turn] == ["thinking", "text", "tool_use"]
        assert first_turn[2]["name"] == "Grep"

        grep_result = messages[2]
        assert grep_result["message"]["content"][0]["tool_use_id"] == "call_grep"
        assert grep_result["timestamp"] == "2025-01-22T08:00:32.000Z"
        assert grep_result["toolUseResult"]["metadata"] == {"matches": 1}

        assert messages[3]["message"]["content"][0]["id"] == "call_bash"
        bash_result = messages[4]["message"]["content"][0]
        assert bash_result["is_error"] is True
        assert bash_result["content"] == "command not found: psql"

        assert messages[5]["message"]["content"] == [{"type": "text", "text": "The query has a typo."}]

        assert conversation["metadata"] == {
            "startTime": "2025-01-22T08:00:00.000Z",
            "endTime": "2025-01-22T08:30:00.000Z",
            "messageCount": 6,
        }
        assert "debug" not in conversation

    def test_running_tool_kept_in_final_message(self):
        export = {
            "info": {"id": "s"},
            "messages": [{
                "info": {"role": "assistant", "sessionID": "s", "time": {"created": 0}},
                "parts": [{"type": "text", "text": "checking"}, {
                    "type": "tool", "callID": "c", "tool": "bash",
                    "state": {"status": "running", "input": {}, "time": {"start": 5}},
                }],
            }],
        }
        messages = build_conversation("s", json.dumps(export))["messages"]
        assert len(messages) == 1
        assert [c["type"] for c in messages[0]["message"]["content"]] == ["text", "tool_use"]

    def test_noise_around_export(self, export_output):
        conversation = build_conversation("ses_001", "Exporting session...\n" + export_output)
        assert conversation["metadata"]["messageCount"] == 6

    def test_unparseable_export_degrades(self):
        conversation = build_conversation("ses_x", "Session not found")
        assert conversation["messages"] == []
        assert conversation["debug"]["parseError"]

    def test_malformed_entries_skipped(self):
        raw = json.dumps({"messages": ["junk", {"parts": []}, {
            "info": {"role": "user", "time": {"created": 1000}},
            "parts": [{"type": "text", "text": "hi"}],
        }]})
        messages = build_conversation("s", raw)["messages"]
        assert len(messages) == 1
        assert messages[0]["session_id"] == "unknown"


class TestHistoryService:
    @pytest.mark.asyncio
    async def test_list_runs_in_project_dir(self, session_list_output):
        runtime = FakeRuntime(results={("session", "list"): ok(session_list_output)})
        service = HistoryService(runtime, "opencode")

        result = await service.list_histories("/Users/testuser/dev/webapp")

        assert [c["sessionId"] for c in result["conversations"]] == ["ses_other"]
        assert runtime.calls == [{
            "command": "opencode",
            "args": ["session", "list", "--format", "json"],
            "cwd": "/Users/testuser/dev/webapp",
        }]

    @pytest.mark.asyncio
    async def test_missing_session(self):
        service = HistoryService(FakeRuntime(), "opencode")
        assert await service.load_conversation("nope", "/tmp") is None

    @pytest.mark.asyncio
    async def test_load_conversation(self, export_output):
        runtime = FakeRuntime(results={("export", "ses_001"): ok(export_output)})
        conversation = await HistoryService(runtime, "opencode").load_conversation("ses_001", "/tmp")
        assert conversation["sessionId"] == "ses_001"
        assert runtime.calls[0]["cwd"] == "/tmp"
