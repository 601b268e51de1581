"""Session listing derived from the history registry.

Older history entries carry no sessionId. For those the session is guessed
by picking the transcript in the entry's project directory whose mtime is
closest to the entry timestamp.
"""

from __future__ import annotations

import asyncio
import logging
import math
from pathlib import Path
from typing import TYPE_CHECKING

from claude_run_mcp.models import HistoryEntry, Session
from claude_run_mcp.projects_utils import (
    TRANSCRIPT_EXT,
    encode_project_path,
    get_project_name,
    session_id_from_path,
)

if TYPE_CHECKING:
    from claude_run_mcp.storage import HistoryCache

log = logging.getLogger("claude_run_mcp.sessions")


class SessionResolver:
    """Builds the deduplicated, newest-first session list."""

    def __init__(
        self,
        history: "HistoryCache",
        projects_dir: Path,
        transcript_ext: str = TRANSCRIPT_EXT,
    ):
        self.history = history
        self.projects_dir = projects_dir
        self.transcript_ext = transcript_ext

    def find_session_by_timestamp(self, encoded_project: str, timestamp: float) -> str | None:
        """Pick the transcript whose mtime is nearest to `timestamp` (ms).

        Not cached; every unresolved history entry rescans its directory.
        Blocking, run it in a worker thread.
        """
        project_dir = self.projects_dir / encoded_project
        try:
            children = list(project_dir.iterdir())
        except OSError:
            return None

        closest: str | None = None
        closest_diff = math.inf
        for child in children:
            session_id = session_id_from_path(child, self.transcript_ext)
            if session_id is None:
                continue
            try:
                mtime_ms = child.stat().st_mtime * 1000
            except OSError:
                continue
            diff = abs(mtime_ms - timestamp)
            if diff < closest_diff:
                closest_diff = diff
                closest = session_id
        return closest

    async def _resolve_id(self, entry: HistoryEntry) -> str | None:
        if entry.session_id is not None:
            return entry.session_id
        return await asyncio.to_thread(
            self.find_session_by_timestamp,
            encode_project_path(entry.project),
            entry.timestamp,
        )

    async def get_sessions(self) -> list[Session]:
        """List sessions, first history occurrence wins, newest first."""
        entries = await self.history.get()
        sessions: list[Session] = []
        seen_ids: set[str] = set()

        for entry in entries:
            session_id = await self._resolve_id(entry)
            if session_id is None or session_id in seen_ids:
                continue

            seen_ids.add(session_id)
            sessions.append(Session(
                id=session_id,
                display=entry.display,
                timestamp=entry.timestamp,
                project=entry.project,
                project_name=get_project_name(entry.project),
            ))

        # sort() is stable, so equal timestamps keep history order
        sessions.sort(key=lambda s: s.timestamp, reverse=True)
        return sessions

    async def get_session_meta(self, session_id: str) -> Session | None:
        for session in await self.get_sessions():
            if session.id == session_id:
                return session
        return None

    async def get_projects(self) -> list[str]:
        entries = await self.history.get()
        return sorted({entry.project for entry in entries if entry.project})
