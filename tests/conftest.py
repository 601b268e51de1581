"""Shared fixtures: a throwaway Claude directory with history and transcripts."""

import json
from pathlib import Path

import pytest

from claude_run_mcp.projects_utils import encode_project_path


class ClaudeDirBuilder:
    """Writes history.jsonl and project transcripts under a root directory."""

    def __init__(self, root: Path):
        self.root = root
        self.projects_dir = root / "projects"
        self.history_path = root / "history.jsonl"

    def write_history(self, entries: list[dict], extra_lines: list[str] | None = None) -> Path:
        lines = [json.dumps(e) for e in entries] + (extra_lines or [])
        self.history_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return self.history_path

    def write_transcript(
        self,
        project: str,
        session_id: str,
        messages: list[dict],
        raw_suffix: str = "",
    ) -> Path:
        project_dir = self.projects_dir / encode_project_path(project)
        project_dir.mkdir(parents=True, exist_ok=True)
        path = project_dir / f"{session_id}.jsonl"
        body = "".join(json.dumps(m) + "\n" for m in messages) + raw_suffix
        path.write_text(body, encoding="utf-8")
        return path


def user_msg(text: str, uuid: str = "u1") -> dict:
    return {
        "type": "user",
        "uuid": uuid,
        "timestamp": "2025-01-01T00:00:00Z",
        "sessionId": "s",
        "message": {"role": "user", "content": text},
    }


def assistant_msg(text: str, uuid: str = "a1", parent: str = "u1") -> dict:
    return {
        "type": "assistant",
        "uuid": uuid,
        "parentUuid": parent,
        "timestamp": "2025-01-01T00:00:01Z",
        "sessionId": "s",
        "message": {
            "role": "assistant",
            "model": "claude-sonnet",
            "content": [{"type": "text", "text": text}],
            "usage": {"input_tokens": 10, "output_tokens": 5},
        },
    }


def summary_msg(text: str) -> dict:
    return {"type": "summary", "summary": text, "leafUuid": "a1"}


@pytest.fixture
def claude_dir(tmp_path):
    """Empty Claude directory with a projects/ subdirectory."""
    builder = ClaudeDirBuilder(tmp_path / ".claude")
    builder.projects_dir.mkdir(parents=True)
    return builder
