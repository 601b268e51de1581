"""In-memory indexes over the Claude Code data directory.

Storage owns two shared tables, each behind its own reader-writer lock:
- FileIndex: session id -> transcript path
- HistoryCache: parsed snapshot of history.jsonl

Both are built once by Storage.load() and afterwards only changed by the
ChangeWatcher (insert / invalidate) or by a rescan on index miss.
Nothing is ever evicted.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from claude_run_mcp import DEFAULT_CLAUDE_DIR
from claude_run_mcp.local_reader import ConversationReader
from claude_run_mcp.models import ConversationMessage, HistoryEntry, Session, StreamResult
from claude_run_mcp.projects_utils import (
    HISTORY_FILE,
    PROJECTS_DIR,
    TRANSCRIPT_EXT,
    is_safe_session_id,
    iter_project_dirs,
    session_id_from_path,
)
from claude_run_mcp.rwlock import ReadWriteLock
from claude_run_mcp.sessions import SessionResolver

log = logging.getLogger("claude_run_mcp.storage")


# ═══════════════════════════════════════════════════════════════════════════════
# FILE INDEX
# ═══════════════════════════════════════════════════════════════════════════════


class FileIndex:
    """Maps session ids to transcript files under the projects directory."""

    def __init__(self, projects_dir: Path, transcript_ext: str = TRANSCRIPT_EXT):
        self.projects_dir = projects_dir
        self.transcript_ext = transcript_ext
        self._entries: dict[str, Path] = {}
        self._lock = ReadWriteLock()

    def _scan(self) -> dict[str, Path]:
        """Walk every project directory once (blocking)."""
        found: dict[str, Path] = {}
        for project_dir in iter_project_dirs(self.projects_dir):
            try:
                children = list(project_dir.iterdir())
            except OSError as e:
                log.debug(f"Skipping unreadable project dir {project_dir}: {e}")
                continue

            for child in children:
                session_id = session_id_from_path(child, self.transcript_ext)
                if session_id is not None:
                    found[session_id] = child
        return found

    def _find(self, session_id: str) -> Path | None:
        """Search all project directories for <session_id><ext> (blocking)."""
        target = f"{session_id}{self.transcript_ext}"
        for project_dir in iter_project_dirs(self.projects_dir):
            candidate = project_dir / target
            try:
                if candidate.exists():
                    return candidate
            except OSError:
                continue
        return None

    async def build(self) -> int:
        """Scan the whole projects tree into the index.

        Returns:
            Number of transcripts found by this scan
        """
        found = await asyncio.to_thread(self._scan)
        async with self._lock.write():
            self._entries.update(found)
        log.info(f"File index built: {len(found)} transcripts under {self.projects_dir}")
        return len(found)

    async def lookup(self, session_id: str) -> Path | None:
        """Resolve a session id to its transcript, rescanning on a miss."""
        async with self._lock.read():
            path = self._entries.get(session_id)
        if path is not None:
            return path

        if not is_safe_session_id(session_id):
            log.warning(f"Rejected session id: {session_id[:50]!r}")
            return None

        path = await asyncio.to_thread(self._find, session_id)
        if path is None:
            return None

        async with self._lock.write():
            self._entries[session_id] = path
        log.debug(f"Indexed {session_id} on lookup miss: {path}")
        return path

    async def insert(self, session_id: str, path: Path) -> None:
        async with self._lock.write():
            self._entries[session_id] = path

    async def size(self) -> int:
        async with self._lock.read():
            return len(self._entries)

    async def snapshot(self) -> dict[str, Path]:
        """Copy of the current mapping."""
        async with self._lock.read():
            return dict(self._entries)


# ═══════════════════════════════════════════════════════════════════════════════
# HISTORY CACHE
# ═══════════════════════════════════════════════════════════════════════════════


class HistoryCache:
    """Lazily loaded snapshot of history.jsonl.

    The snapshot is either unset or complete: a load builds the full tuple
    before publishing it, and invalidate() drops it wholesale.
    """

    def __init__(self, history_path: Path):
        self.history_path = history_path
        self._entries: tuple[HistoryEntry, ...] | None = None
        self._lock = ReadWriteLock()
        self.skipped_lines = 0

    def _read(self) -> tuple[tuple[HistoryEntry, ...], int]:
        """Parse the registry file (blocking).

        Returns:
            (entries, number of malformed lines skipped)
        """
        try:
            content = self.history_path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            log.debug(f"History file not found: {self.history_path}")
            return (), 0
        except OSError as e:
            log.warning(f"Could not read history file {self.history_path}: {e}")
            return (), 0

        entries = []
        skipped = 0
        for lineno, line in enumerate(content.split("\n"), start=1):
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(HistoryEntry.model_validate_json(line))
            except ValidationError as e:
                skipped += 1
                log.debug(f"Skipping malformed history line {lineno}: {e.errors()[0]['msg']}")
        return tuple(entries), skipped

    async def _load_locked(self) -> tuple[HistoryEntry, ...]:
        entries, skipped = await asyncio.to_thread(self._read)
        self.skipped_lines += skipped
        self._entries = entries
        log.debug(f"History loaded: {len(entries)} entries, {skipped} skipped")
        return entries

    async def load(self) -> tuple[HistoryEntry, ...]:
        """Force a full reload."""
        async with self._lock.write():
            return await self._load_locked()

    async def get(self) -> tuple[HistoryEntry, ...]:
        async with self._lock.read():
            if self._entries is not None:
                return self._entries

        async with self._lock.write():
            # Another coroutine may have loaded while we waited
            if self._entries is not None:
                return self._entries
            return await self._load_locked()

    async def invalidate(self) -> None:
        async with self._lock.write():
            self._entries = None

    async def is_loaded(self) -> bool:
        async with self._lock.read():
            return self._entries is not None


# ═══════════════════════════════════════════════════════════════════════════════
# STORAGE SERVICE
# ═══════════════════════════════════════════════════════════════════════════════


class Storage:
    """Read-only service over one Claude data directory.

    Entry point for the server and CLI. Owns the file index and history
    cache and exposes the listing and reading operations on top of them.
    """

    def __init__(
        self,
        claude_dir: str | Path | None = None,
        history_file: str = HISTORY_FILE,
        transcript_ext: str = TRANSCRIPT_EXT,
    ):
        """Initialize storage.

        Args:
            claude_dir: Claude data directory (default: ~/.claude)
            history_file: Registry file name inside claude_dir
            transcript_ext: Extension of transcript files
        """
        self.claude_dir = Path(claude_dir or DEFAULT_CLAUDE_DIR).expanduser().absolute()
        self.projects_dir = self.claude_dir / PROJECTS_DIR
        self.history_path = self.claude_dir / history_file
        self.transcript_ext = transcript_ext

        self.file_index = FileIndex(self.projects_dir, transcript_ext)
        self.history = HistoryCache(self.history_path)
        self.resolver = SessionResolver(self.history, self.projects_dir, transcript_ext)
        self.reader = ConversationReader(self.file_index)

    async def load(self) -> None:
        """Build the file index and load the history concurrently."""
        await asyncio.gather(self.file_index.build(), self.history.load())

    # Mutations used by the watcher

    async def invalidate_history_cache(self) -> None:
        await self.history.invalidate()

    async def add_to_file_index(self, session_id: str, path: Path) -> None:
        await self.file_index.insert(session_id, path)

    # Read operations

    async def get_sessions(self) -> list[Session]:
        return await self.resolver.get_sessions()

    async def get_projects(self) -> list[str]:
        return await self.resolver.get_projects()

    async def get_session_meta(self, session_id: str) -> Session | None:
        return await self.resolver.get_session_meta(session_id)

    async def get_conversation(self, session_id: str) -> list[ConversationMessage]:
        return await self.reader.read(session_id)

    async def get_conversation_stream(self, session_id: str, from_offset: int) -> StreamResult:
        return await self.reader.read_stream(session_id, from_offset)

    async def stats(self) -> dict[str, Any]:
        """Index sizes and malformed-input counters."""
        return {
            "claude_dir": str(self.claude_dir),
            "indexed_transcripts": await self.file_index.size(),
            "history_loaded": await self.history.is_loaded(),
            "history_skipped_lines": self.history.skipped_lines,
            "transcript_skipped_lines": self.reader.skipped_lines,
            "stream_reads_halted": self.reader.halted_reads,
        }
