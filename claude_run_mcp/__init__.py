"""claude-run MCP - Read-only access to Claude Code conversation history.

Indexes the local ~/.claude directory and serves sessions and transcripts,
including incremental tail reads of transcripts that are still being written.
"""

from pathlib import Path

__version__ = "0.3.0"

# Default root of the Claude Code data directory
DEFAULT_CLAUDE_DIR = Path.home() / ".claude"


class ClaudeRunError(Exception):
    """Base class for errors raised by claude-run."""
