"""Tests for the typer CLI."""

import json
from unittest.mock import MagicMock

import pytest
from typer.testing import CliRunner

from claude_run_mcp import __version__
from claude_run_mcp import cli as cli_module
from claude_run_mcp import config as config_module
from claude_run_mcp.cli import _begin_tail, app
from claude_run_mcp.storage import Storage

from conftest import assistant_msg, summary_msg, user_msg

runner = CliRunner()


@pytest.fixture
def populated_dir(claude_dir, monkeypatch, tmp_path):
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")
    for name in ("CLAUDE_RUN_CONFIG", "CLAUDE_RUN_DIR", "CLAUDE_RUN_DEBOUNCE_MS"):
        monkeypatch.delenv(name, raising=False)

    claude_dir.write_history([
        {"display": "Refactor parser", "timestamp": 1_700_000_000_000, "project": "/work/alpha", "sessionId": "s1"},
        {"display": "Other", "timestamp": 1_600_000_000_000, "project": "/work/beta", "sessionId": "s2"},
    ])
    claude_dir.write_transcript("/work/alpha", "s1", [
        user_msg("please refactor", "u1"),
        assistant_msg("done refactoring", "a1", "u1"),
    ])
    return claude_dir


class TestCli:
    """Tests for CLI commands."""

    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_projects(self, populated_dir):
        result = runner.invoke(app, ["projects", "--dir", str(populated_dir.root)])
        assert result.exit_code == 0
        assert result.output.split() == ["/work/alpha", "/work/beta"]

    def test_sessions_empty(self, claude_dir, monkeypatch, tmp_path):
        monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")
        monkeypatch.delenv("CLAUDE_RUN_DIR", raising=False)

        result = runner.invoke(app, ["sessions", "--dir", str(claude_dir.root)])
        assert result.exit_code == 0
        assert "No sessions found" in result.output

    def test_sessions(self, populated_dir):
        result = runner.invoke(app, ["sessions", "--dir", str(populated_dir.root)])
        assert result.exit_code == 0
        assert "s1" in result.output
        assert "s2" in result.output

    def test_show(self, populated_dir):
        result = runner.invoke(app, ["show", "s1", "--dir", str(populated_dir.root)])
        assert result.exit_code == 0
        assert "please refactor" in result.output
        assert "done refactoring" in result.output

    def test_show_unknown(self, populated_dir):
        result = runner.invoke(app, ["show", "missing", "--dir", str(populated_dir.root)])
        assert result.exit_code == 1

    def test_export(self, populated_dir, tmp_path):
        target = tmp_path / "out.md"
        result = runner.invoke(app, [
            "export", "s1", "--dir", str(populated_dir.root), "-f", "md", "-o", str(target),
        ])
        assert result.exit_code == 0
        content = target.read_text(encoding="utf-8")
        assert content.startswith("# Refactor parser")
        assert "done refactoring" in content

    def test_export_bad_format(self, populated_dir, tmp_path):
        result = runner.invoke(app, [
            "export", "s1", "--dir", str(populated_dir.root), "-f", "pdf", "-o", str(tmp_path / "x"),
        ])
        assert result.exit_code == 1
        assert not (tmp_path / "x").exists()

    def test_config(self, populated_dir):
        result = runner.invoke(app, ["config", "--dir", str(populated_dir.root)])
        assert result.exit_code == 0
        assert "configuration" in result.output


class TestBeginTail:
    """Tests for the start of `tail`."""

    @pytest.mark.asyncio
    async def test_watcher_starts_before_offset_is_taken(self, claude_dir):
        """A line written right after the watcher starts is inside the starting offset."""
        path = claude_dir.write_transcript("/p", "s", [user_msg("q", "u1")])
        storage = Storage(claude_dir.root)
        await storage.load()

        calls = []
        read_stream = storage.get_conversation_stream

        async def recording_stream(session_id, offset):
            calls.append("stream")
            return await read_stream(session_id, offset)

        def start():
            calls.append("start")
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(assistant_msg("a", "a1")) + "\n")

        storage.get_conversation_stream = recording_stream
        watcher = MagicMock()
        watcher.start.side_effect = start

        offset = await _begin_tail(storage, watcher, "s", from_start=False)

        assert calls == ["start", "stream"]
        assert offset == path.stat().st_size

    @pytest.mark.asyncio
    async def test_from_start_prints_summary_then_messages(self, claude_dir, monkeypatch):
        path = claude_dir.write_transcript("/p", "s", [
            user_msg("q", "u1"),
            assistant_msg("a", "a1"),
            summary_msg("Title"),
        ])
        storage = Storage(claude_dir.root)
        await storage.load()
        printed = []
        monkeypatch.setattr(cli_module, "_print_message", printed.append)

        offset = await _begin_tail(storage, MagicMock(), "s", from_start=True)

        assert [m.type for m in printed] == ["summary", "user", "assistant"]
        assert offset == path.stat().st_size
