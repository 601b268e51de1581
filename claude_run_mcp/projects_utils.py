"""Project path utilities for Claude Code's on-disk layout.

Claude Code stores transcripts in ~/.claude/projects/{encoded-path}/ where
the encoded path is the project path with '/' and '.' replaced by '-'.
The encoding is lossy: dashes, dots and slashes all end up as '-'.
"""

from __future__ import annotations

import logging
from pathlib import Path

log = logging.getLogger("claude_run_mcp.projects_utils")

# Extension of per-session transcript files
TRANSCRIPT_EXT = ".jsonl"

# Registry of session access events, relative to the Claude directory
HISTORY_FILE = "history.jsonl"

# Subdirectory holding one folder per encoded project
PROJECTS_DIR = "projects"


def encode_project_path(path: str) -> str:
    """Encode a project path the way Claude Code names project directories.

    Examples:
        >>> encode_project_path("/Users/x/proj.git")
        '-Users-x-proj-git'
        >>> encode_project_path("/")
        '-'
    """
    return "".join("-" if c in ("/", ".") else c for c in path)


def get_project_name(project_path: str) -> str:
    """Extract a human-readable project name from a project path.

    Returns the last non-empty '/'-separated segment, or the whole string
    when there is none.

    Examples:
        >>> get_project_name("/a/b/c")
        'c'
        >>> get_project_name("noslash")
        'noslash'
        >>> get_project_name("/a/b/")
        'b'
    """
    segments = [s for s in project_path.split("/") if s]
    return segments[-1] if segments else project_path


def session_id_from_path(path: Path, transcript_ext: str = TRANSCRIPT_EXT) -> str | None:
    """Session id for a transcript path (its file name minus the extension)."""
    name = path.name
    if not name.endswith(transcript_ext) or len(name) == len(transcript_ext):
        return None
    return name[: -len(transcript_ext)]


def is_safe_session_id(session_id: str) -> bool:
    """Check that a session id can be used as a file name inside a project dir.

    Blocks ids such as "../../etc/passwd" from escaping the projects tree.
    """
    if not session_id or session_id in (".", ".."):
        return False
    if "/" in session_id or "\\" in session_id or "\x00" in session_id:
        return False
    return True


def iter_project_dirs(projects_dir: Path) -> list[Path]:
    """List the project directories under the projects root.

    A missing or unreadable root is not an error: it simply has no projects.
    """
    try:
        children = list(projects_dir.iterdir())
    except OSError as e:
        log.debug(f"Projects directory not readable: {projects_dir}: {e}")
        return []

    project_dirs = []
    for child in children:
        try:
            if child.is_dir():
                project_dirs.append(child)
        except OSError:
            continue
    return project_dirs
