"""Tests for conversation exporters."""

import json

import pytest

from claude_run_mcp.exporters import (
    EXPORTERS,
    MAX_TOOL_RESULT_CHARS,
    UnsupportedFormatError,
    blocks_to_text,
    export_conversation,
    get_exporter,
    safe_filename,
    sanitize_text,
)
from claude_run_mcp.models import ConversationMessage, Session
from claude_run_mcp.local_reader import parse_message

from conftest import assistant_msg, summary_msg, user_msg


@pytest.fixture
def session():
    return Session(
        id="abc",
        display="Fix the flaky test!",
        timestamp=1_700_000_000_000,
        project="/Users/dev/repo",
        project_name="repo",
    )


def _msg(data: dict) -> ConversationMessage:
    return parse_message(json.dumps(data))


def _tool_turn() -> ConversationMessage:
    data = assistant_msg("Running it now", "a2")
    data["message"]["content"] = [
        {"type": "thinking", "thinking": "Let me check"},
        {"type": "text", "text": "Running it now"},
        {"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "pytest -x"}},
    ]
    return _msg(data)


def _tool_result_turn(content, is_error=False) -> ConversationMessage:
    data = user_msg("", "u2")
    data["message"]["content"] = [
        {"type": "tool_result", "tool_use_id": "t1", "content": content, "is_error": is_error},
    ]
    return _msg(data)


class TestSanitize:
    """Tests for sanitize_text and safe_filename."""

    def test_strips_command_tags(self):
        text = "<command-name>/clear</command-name><command-args></command-args>hello"
        assert sanitize_text(text) == "hello"

    def test_strips_multiline_system_reminder(self):
        text = "before\n<system-reminder>\nsecret\nstuff\n</system-reminder>\nafter"
        assert sanitize_text(text) == "before\n\nafter"

    def test_plain_text_untouched(self):
        assert sanitize_text("  just text  ") == "just text"

    def test_safe_filename(self):
        assert safe_filename("Fix the flaky test!") == "Fix-the-flaky-test"
        assert safe_filename("../../etc") == "etc"
        assert safe_filename("!!!") == "conversation"
        assert len(safe_filename("x" * 200)) == 60


class TestBlocksToText:
    """Tests for blocks_to_text."""

    def test_renders_each_block_kind(self):
        text = blocks_to_text(_tool_turn().message.content)
        assert "[Thinking]\nLet me check\n[/Thinking]" in text
        assert "Running it now" in text
        assert "[Tool: Bash]\npytest -x" in text

    def test_strip_tools_keeps_only_text(self):
        assert blocks_to_text(_tool_turn().message.content, strip_tools=True) == "Running it now"

    def test_tool_result_error_and_truncation(self):
        long_output = "y" * (MAX_TOOL_RESULT_CHARS + 100)
        text = blocks_to_text(_tool_result_turn(long_output, is_error=True).message.content)
        assert text.startswith("[Error]\n")
        assert text.endswith("...")
        assert len(text) == len("[Error]\n") + MAX_TOOL_RESULT_CHARS + 3

    def test_structured_tool_result(self):
        blocks = _tool_result_turn([{"type": "text", "text": "ok"}]).message.content
        assert '"text": "ok"' in blocks_to_text(blocks)


class TestExporters:
    """Tests for json / md / txt exports."""

    def test_registry(self):
        assert set(EXPORTERS) == {"json", "md", "txt"}
        _, content_type = get_exporter("md")
        assert content_type == "text/markdown"

    def test_unsupported_format(self, session):
        with pytest.raises(UnsupportedFormatError) as exc_info:
            export_conversation("pdf", session, [])
        assert exc_info.value.format == "pdf"
        assert "json, md, txt" in str(exc_info.value)

    def test_json_export(self, session):
        messages = [_msg(summary_msg("Title")), _msg(user_msg("q")), _tool_turn()]
        content, filename = export_conversation("json", session, messages)

        data = json.loads(content)
        assert filename == "claude-Fix-the-flaky-test.json"
        assert data["session"]["projectName"] == "repo"
        assert [m["type"] for m in data["messages"]] == ["summary", "user", "assistant"]
        assert "exportedAt" in data

    def test_json_strip_tools(self, session):
        content, _ = export_conversation("json", session, [_tool_turn()], strip_tools=True)
        blocks = json.loads(content)["messages"][0]["message"]["content"]
        assert blocks == [{"type": "text", "text": "Running it now"}]

    def test_markdown_export(self, session):
        messages = [
            _msg(summary_msg("Title")),
            _msg(user_msg("<command-name>/x</command-name>Please fix")),
            _tool_turn(),
            _tool_result_turn("1 passed"),
        ]
        content, filename = export_conversation("md", session, messages)

        assert filename == "claude-Fix-the-flaky-test.md"
        assert content.startswith("# Fix the flaky test!\n")
        assert "**Session ID:** `abc`" in content
        assert "> **Summary:** Title" in content
        assert "## User\n\nPlease fix" in content
        assert "## Assistant *(claude-sonnet)*" in content
        assert "```bash\npytest -x\n```" in content
        assert "<summary>Result</summary>" in content
        assert "<command-name>" not in content

    def test_markdown_edit_diff(self, session):
        data = assistant_msg("", "a3")
        data["message"]["content"] = [{
            "type": "tool_use",
            "name": "Edit",
            "input": {"file_path": "/r/a.py", "old_string": "x = 1", "new_string": "x = 2"},
        }]
        content, _ = export_conversation("md", session, [_msg(data)])
        assert "**/r/a.py**\n```diff\n- x = 1\n+ x = 2\n```" in content

    def test_text_export(self, session):
        messages = [_msg(user_msg("q")), _tool_turn()]
        content, filename = export_conversation("txt", session, messages, strip_tools=True)

        assert filename == "claude-Fix-the-flaky-test.txt"
        assert "Session: Fix the flaky test!" in content
        assert "Project: repo (/Users/dev/repo)" in content
        assert "Date: 2023-11-14 22:13:20 UTC" in content
        assert "=== User 2025-01-01 00:00:00 UTC ===\nq" in content
        assert "=== Assistant (claude-sonnet) 2025-01-01 00:00:01 UTC ===\nRunning it now" in content
        assert "[Tool:" not in content
