"""Transcript reader for session JSONL files.

Two read modes:
- read(): whole transcript, for the initial view of a session
- read_stream(): everything after a byte offset, for tailing a session
  that Claude Code is still appending to
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import ValidationError

from claude_run_mcp.models import ConversationMessage, StreamResult

if TYPE_CHECKING:
    from claude_run_mcp.storage import FileIndex

log = logging.getLogger("claude_run_mcp.local_reader")

# Message types shown in a conversation; everything else except summaries is dropped
CHAT_TYPES = ("user", "assistant")


def parse_message(line: str) -> ConversationMessage | None:
    """Parse one transcript line, or None if it is not a valid message."""
    try:
        return ConversationMessage.model_validate_json(line)
    except ValidationError:
        return None


def _line_length(raw: bytes) -> tuple[bytes, int]:
    """Strip the line terminator and compute the bytes the line accounts for.

    Every line counts as its content plus exactly one terminator byte, even
    when it ended in CRLF or had no terminator at all. Producers compute
    offsets the same way, so this must not be "corrected".
    """
    if raw.endswith(b"\n"):
        raw = raw[:-1]
        if raw.endswith(b"\r"):
            raw = raw[:-1]
    return raw, len(raw) + 1


class ConversationReader:
    """Reads transcripts located through the FileIndex.

    Keeps counters of malformed input so that skipped lines stay visible
    in status output.
    """

    def __init__(self, file_index: "FileIndex"):
        self.file_index = file_index
        self.skipped_lines = 0
        self.halted_reads = 0

    # ═══════════════════════════════════════════════════════════════════════════
    # FULL READ
    # ═══════════════════════════════════════════════════════════════════════════

    def read_file(self, trace_path: Path) -> tuple[list[ConversationMessage], int]:
        """Read and parse a whole transcript (blocking).

        Returns:
            (messages, number of malformed lines skipped)
        """
        try:
            content = trace_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            log.error(f"Error reading conversation {trace_path}: {e}")
            return [], 0

        messages: list[ConversationMessage] = []
        skipped = 0
        # Split on "\n" only: JSON may legally contain raw U+2028 etc.
        for line in content.split("\n"):
            line = line.strip()
            if not line:
                continue
            msg = parse_message(line)
            if msg is None:
                skipped += 1
                continue
            if msg.type in CHAT_TYPES:
                messages.append(msg)
            elif msg.type == "summary":
                # Front-inserted each time: with several summaries the last one read leads
                messages.insert(0, msg)

        log.debug(f"Read {len(messages)} messages from {trace_path.name}")
        return messages, skipped

    async def read(self, session_id: str) -> list[ConversationMessage]:
        """Read a session's whole conversation (empty if the session is unknown)."""
        trace_path = await self.file_index.lookup(session_id)
        if trace_path is None:
            return []

        messages, skipped = await asyncio.to_thread(self.read_file, trace_path)
        if skipped:
            self.skipped_lines += skipped
            log.debug(f"Skipped {skipped} malformed lines in {session_id}")
        return messages

    # ═══════════════════════════════════════════════════════════════════════════
    # INCREMENTAL READ
    # ═══════════════════════════════════════════════════════════════════════════

    def read_file_from(self, trace_path: Path, from_offset: int) -> tuple[StreamResult, bool]:
        """Read complete messages after `from_offset` (blocking).

        Reading stops at the first line that does not parse, which is
        normally a line Claude Code is still writing. Bytes of the lines
        before it are committed so that line is retried on the next call.

        Returns:
            (result, whether reading halted on an unparseable line)
        """
        unchanged = StreamResult(messages=[], next_offset=from_offset)

        try:
            file_size = trace_path.stat().st_size
        except OSError:
            return unchanged, False

        if from_offset >= file_size:
            return unchanged, False

        try:
            f = open(trace_path, "rb")
        except OSError as e:
            log.error(f"Error opening conversation file {trace_path}: {e}")
            return unchanged, False

        messages: list[ConversationMessage] = []
        bytes_consumed = 0
        halted = False
        with f:
            f.seek(from_offset)
            for raw in f:
                content, line_bytes = _line_length(raw)
                try:
                    line = content.decode("utf-8").strip()
                except UnicodeDecodeError:
                    halted = True
                    break

                if not line:
                    bytes_consumed += line_bytes
                    continue

                msg = parse_message(line)
                if msg is None:
                    halted = True
                    break

                # Summaries are front-loaded and already shown by the full read
                if msg.type in CHAT_TYPES:
                    messages.append(msg)
                bytes_consumed += line_bytes

        next_offset = min(from_offset + bytes_consumed, file_size)
        return StreamResult(messages=messages, next_offset=next_offset), halted

    async def read_stream(self, session_id: str, from_offset: int) -> StreamResult:
        """Read the messages appended to a session since `from_offset`.

        Args:
            session_id: Session to read
            from_offset: Byte offset returned by the previous call (0 to start)

        Returns:
            StreamResult; next_offset is 0 when the session has no transcript
        """
        from_offset = max(from_offset, 0)
        trace_path = await self.file_index.lookup(session_id)
        if trace_path is None:
            return StreamResult(messages=[], next_offset=0)

        result, halted = await asyncio.to_thread(self.read_file_from, trace_path, from_offset)
        if halted:
            self.halted_reads += 1
            log.debug(f"Stream read of {session_id} halted at offset {result.next_offset}")
        return result
