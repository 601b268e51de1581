"""MCP server for claude-run.

Exposes the local Claude Code history as MCP tools. Each tool maps onto
one Storage operation:
- list_sessions / list_projects / get_session_meta
- get_conversation / get_conversation_stream
- export_conversation
- changes: poll watcher notifications (sessions-changed, conversation-changed)
- status: index sizes, malformed-line counters, watcher state

Set CLAUDE_RUN_DIR to read a Claude directory other than ~/.claude.
"""

import asyncio
import logging
import os

from mcp.server.fastmcp import FastMCP

from claude_run_mcp import __version__
from claude_run_mcp.config import ConfigError, RunConfig, load_config
from claude_run_mcp.exporters import UnsupportedFormatError, export_conversation as render_export, get_exporter
from claude_run_mcp.storage import Storage
from claude_run_mcp.watcher import ChangeFeed, ChangeWatcher, WatcherStartError

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if os.environ.get("CLAUDE_RUN_DEBUG") else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
log = logging.getLogger("claude_run_mcp.server")

# Initialize FastMCP server
mcp = FastMCP("claude-run")

# Lazy-initialized dependencies
_config: RunConfig | None = None
_storage: Storage | None = None
_watcher: ChangeWatcher | None = None
_feed = ChangeFeed()
_storage_lock = asyncio.Lock()


def _get_config() -> RunConfig:
    global _config
    if _config is None:
        _config = load_config()
    return _config


async def _get_storage() -> Storage:
    """Get or create the loaded storage, with its watcher running.

    Raises:
        ConfigError: If the configuration is invalid
        WatcherStartError: If the projects tree cannot be watched
    """
    global _storage, _watcher

    if _storage is None:
        async with _storage_lock:
            # Double-check after acquiring lock
            if _storage is None:
                config = _get_config()
                storage = Storage(
                    config.claude_dir,
                    history_file=config.history_file,
                    transcript_ext=config.transcript_ext,
                )
                await storage.load()

                watcher = ChangeWatcher(
                    storage,
                    debounce=config.debounce_ms / 1000,
                    poll_interval=config.poll_interval_ms / 1000,
                    queue_size=config.queue_size,
                )
                watcher.subscribe(_feed)
                watcher.start()

                _watcher = watcher
                _storage = storage
                log.info(f"Storage initialized for {storage.claude_dir}")
    return _storage


def _error(e: Exception) -> dict:
    return {"error": str(e)}


# ═══════════════════════════════════════════════════════════════════════════════
# SESSION TOOLS
# ═══════════════════════════════════════════════════════════════════════════════


@mcp.tool()
async def list_sessions(project: str | None = None, limit: int | None = None) -> dict:
    """List Claude Code sessions, newest first.

    Args:
        project: Only sessions whose project path equals this
        limit: Maximum number of sessions to return

    Returns:
        {"sessions": [...], "total": int}
    """
    try:
        storage = await _get_storage()
    except (ConfigError, WatcherStartError) as e:
        return _error(e)

    sessions = await storage.get_sessions()
    if project:
        sessions = [s for s in sessions if s.project == project]
    total = len(sessions)
    if limit is not None and limit >= 0:
        sessions = sessions[:limit]
    return {"sessions": [s.to_wire() for s in sessions], "total": total}


@mcp.tool()
async def list_projects() -> dict:
    """List distinct project paths that have sessions, sorted."""
    try:
        storage = await _get_storage()
    except (ConfigError, WatcherStartError) as e:
        return _error(e)
    return {"projects": await storage.get_projects()}


@mcp.tool()
async def get_session_meta(session_id: str) -> dict:
    """Get the listing entry for one session.

    Returns:
        {"session": {...}} or {"session": None} if the session is unknown
    """
    try:
        storage = await _get_storage()
    except (ConfigError, WatcherStartError) as e:
        return _error(e)
    session = await storage.get_session_meta(session_id)
    return {"session": session.to_wire() if session else None}


# ═══════════════════════════════════════════════════════════════════════════════
# CONVERSATION TOOLS
# ═══════════════════════════════════════════════════════════════════════════════


@mcp.tool()
async def get_conversation(session_id: str) -> dict:
    """Read a whole conversation (user/assistant messages, summaries first)."""
    try:
        storage = await _get_storage()
    except (ConfigError, WatcherStartError) as e:
        return _error(e)
    messages = await storage.get_conversation(session_id)
    return {"messages": [m.to_wire() for m in messages]}


@mcp.tool()
async def get_conversation_stream(session_id: str, offset: int = 0) -> dict:
    """Read messages appended to a conversation since a byte offset.

    Pass the returned nextOffset as `offset` on the next call to tail a
    session that is still being written.

    Returns:
        {"messages": [...], "nextOffset": int}
    """
    if offset < 0:
        return {"error": f"offset must be >= 0, got {offset}"}
    try:
        storage = await _get_storage()
    except (ConfigError, WatcherStartError) as e:
        return _error(e)
    result = await storage.get_conversation_stream(session_id, offset)
    return result.to_wire()


@mcp.tool()
async def export_conversation(session_id: str, format: str = "md", strip_tools: bool = False) -> dict:
    """Export a conversation as json, md or txt.

    Returns:
        {"filename": str, "content_type": str, "content": str}
    """
    try:
        _, content_type = get_exporter(format)
        storage = await _get_storage()
    except (ConfigError, WatcherStartError, UnsupportedFormatError) as e:
        return _error(e)

    session = await storage.get_session_meta(session_id)
    if session is None:
        return {"error": f"Session not found: {session_id}"}

    messages = await storage.get_conversation(session_id)
    content, filename = render_export(format, session, messages, strip_tools)
    return {"filename": filename, "content_type": content_type, "content": content}


# ═══════════════════════════════════════════════════════════════════════════════
# WATCHER TOOLS
# ═══════════════════════════════════════════════════════════════════════════════


@mcp.tool()
async def changes() -> dict:
    """Return and clear change notifications seen since the last call.

    Each event is {"event": "sessions-changed" | "conversation-changed",
    "session_id"?: str, "at": float}.
    """
    try:
        await _get_storage()
    except (ConfigError, WatcherStartError) as e:
        return _error(e)
    return {"events": _feed.drain()}


@mcp.tool()
async def status() -> dict:
    """Show index statistics and watcher state."""
    try:
        storage = await _get_storage()
    except (ConfigError, WatcherStartError) as e:
        return _error(e)
    return {
        "version": __version__,
        "storage": await storage.stats(),
        "watcher": _watcher.get_status() if _watcher else {"is_watching": False},
    }


# ═══════════════════════════════════════════════════════════════════════════════
# SERVER ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════════════


def cleanup() -> None:
    """Stop the watcher on shutdown."""
    global _storage, _watcher

    if _watcher is not None:
        try:
            _watcher.stop()
        except Exception as e:
            log.warning(f"Error stopping watcher: {e}")
        _watcher = None
    _storage = None


def main():
    """Run the MCP server."""
    try:
        log.info(f"Starting claude-run MCP server v{__version__}...")
        mcp.run()
    finally:
        log.info("Server shutting down, running cleanup...")
        cleanup()
        log.info("Cleanup finished.")


if __name__ == "__main__":
    main()
