"""Data models for history entries, sessions and transcript messages.

Field names follow Python conventions; aliases carry the camelCase names
used in the JSONL files so that parsing and serialization both round-trip
the on-disk shape.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class HistoryEntry(BaseModel):
    """One line of ~/.claude/history.jsonl."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    display: str
    timestamp: float = Field(strict=True)  # ms since epoch; strings are malformed
    project: str
    session_id: str | None = Field(default=None, alias="sessionId")


class Session(BaseModel):
    """A session as listed to clients (derived from history, never stored)."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    display: str
    timestamp: float
    project: str
    project_name: str = Field(alias="projectName")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class TokenUsage(BaseModel):
    input_tokens: int | None = None
    output_tokens: int | None = None
    cache_creation_input_tokens: int | None = None
    cache_read_input_tokens: int | None = None


class MessageContent(BaseModel):
    """The `message` payload of a user or assistant transcript line.

    `content` is either plain text or a list of content blocks
    (text, thinking, tool_use, tool_result, ...), kept as raw dicts.
    """

    role: str
    content: str | list[dict[str, Any]]
    model: str | None = None
    usage: TokenUsage | None = None


class ConversationMessage(BaseModel):
    """One line of a session transcript."""

    model_config = ConfigDict(populate_by_name=True)

    type: str  # "user" | "assistant" | "summary" | anything else
    uuid: str | None = None
    parent_uuid: str | None = Field(default=None, alias="parentUuid")
    timestamp: str | None = None
    session_id: str | None = Field(default=None, alias="sessionId")
    message: MessageContent | None = None
    summary: str | None = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class StreamResult(BaseModel):
    """Result of an incremental transcript read."""

    model_config = ConfigDict(populate_by_name=True)

    messages: list[ConversationMessage] = Field(default_factory=list)
    next_offset: int = Field(default=0, alias="nextOffset")

    def to_wire(self) -> dict[str, Any]:
        return {
            "messages": [m.to_wire() for m in self.messages],
            "nextOffset": self.next_offset,
        }
