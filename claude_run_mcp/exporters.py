"""Conversation exporters.

Render a session and its messages as JSON, Markdown or plain text.
Claude Code's injected command tags and system reminders are stripped
from message text before rendering.
"""

import json
import re
from datetime import datetime, timezone
from typing import Any, Callable

from claude_run_mcp import ClaudeRunError
from claude_run_mcp.models import ConversationMessage, Session

# Long blocks are cut to keep exports readable
MAX_THINKING_CHARS = 5000
MAX_TOOL_RESULT_CHARS = 2000

SANITIZE_PATTERNS = [
    re.compile(r"<command-name>[^<]*</command-name>"),
    re.compile(r"<command-message>[^<]*</command-message>"),
    re.compile(r"<command-args>[^<]*</command-args>"),
    re.compile(r"<local-command-stdout>[^<]*</local-command-stdout>"),
    re.compile(r"<system-reminder>.*?</system-reminder>", re.DOTALL),
    re.compile(r"^\s*Caveat:.*?unless the user explicitly asks you to\.", re.DOTALL),
]


class UnsupportedFormatError(ClaudeRunError):
    """Raised for an export format with no exporter."""

    def __init__(self, fmt: str):
        self.format = fmt
        super().__init__(
            f"Unsupported format: {fmt}. Use {', '.join(sorted(EXPORTERS))}."
        )


def sanitize_text(text: str) -> str:
    """Remove Claude Code command tags and system reminders, then trim."""
    for pattern in SANITIZE_PATTERNS:
        text = pattern.sub("", text)
    return text.strip()


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def _format_time(timestamp_ms: float) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).strftime(
        "%Y-%m-%d %H:%M:%S UTC"
    )


def _format_iso(timestamp: str) -> str:
    try:
        parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except ValueError:
        return timestamp
    return parsed.strftime("%Y-%m-%d %H:%M:%S UTC")


def _tool_result_text(block: dict[str, Any]) -> str:
    content = block.get("content")
    raw = content if isinstance(content, str) else json.dumps(content, indent=2)
    return _truncate(sanitize_text(raw), MAX_TOOL_RESULT_CHARS)


def safe_filename(display: str) -> str:
    """File name stem for an export, derived from the session title."""
    name = re.sub(r"[^a-zA-Z0-9\-_ ]", "", display)
    name = re.sub(r"\s+", "-", name)[:60]
    return name or "conversation"


def _strip_tool_blocks(message: ConversationMessage) -> ConversationMessage:
    if message.message is None or not isinstance(message.message.content, list):
        return message
    text_blocks = [b for b in message.message.content if b.get("type") == "text"]
    content = message.message.model_copy(update={"content": text_blocks})
    return message.model_copy(update={"message": content})


# ═══════════════════════════════════════════════════════════════════════════════
# JSON
# ═══════════════════════════════════════════════════════════════════════════════


def export_json(
    session: Session,
    messages: list[ConversationMessage],
    strip_tools: bool = False,
) -> str:
    if strip_tools:
        messages = [_strip_tool_blocks(m) for m in messages]
    return json.dumps(
        {
            "exportedAt": datetime.now(timezone.utc).isoformat(),
            "session": session.to_wire(),
            "messages": [m.to_wire() for m in messages],
        },
        indent=2,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# PLAIN TEXT
# ═══════════════════════════════════════════════════════════════════════════════


def _format_tool_input(name: str, tool_input: dict[str, Any]) -> str:
    n = name.lower()
    if n == "bash" and tool_input.get("command"):
        return str(tool_input["command"])
    if n in ("read", "edit", "write") and tool_input.get("file_path"):
        return str(tool_input["file_path"])
    if n in ("grep", "glob") and tool_input.get("pattern"):
        return f"pattern: {tool_input['pattern']}"
    return json.dumps(tool_input, indent=2)


def blocks_to_text(blocks: list[dict[str, Any]], strip_tools: bool = False) -> str:
    """Flatten content blocks into readable text."""
    parts: list[str] = []

    for block in blocks:
        block_type = block.get("type")
        if strip_tools and block_type != "text":
            continue

        if block_type == "text" and block.get("text"):
            text = sanitize_text(block["text"])
            if text:
                parts.append(text)
        elif block_type == "thinking" and block.get("thinking"):
            thinking = _truncate(block["thinking"], MAX_THINKING_CHARS)
            parts.append(f"[Thinking]\n{thinking}\n[/Thinking]")
        elif block_type == "tool_use":
            name = block.get("name") or ""
            tool_input = block.get("input")
            input_str = _format_tool_input(name, tool_input) if isinstance(tool_input, dict) else ""
            parts.append(f"[Tool: {name}]" + (f"\n{input_str}" if input_str else ""))
        elif block_type == "tool_result":
            label = "Error" if block.get("is_error") else "Result"
            result = _tool_result_text(block)
            parts.append(f"[{label}]" + (f"\n{result}" if result else ""))

    return "\n\n".join(parts)


def export_text(
    session: Session,
    messages: list[ConversationMessage],
    strip_tools: bool = False,
) -> str:
    lines = [
        f"Session: {session.display}",
        f"Project: {session.project_name} ({session.project})",
        f"Date: {_format_time(session.timestamp)}",
        f"ID: {session.id}",
        "",
        "=" * 60,
        "",
    ]

    for msg in messages:
        if msg.type == "summary":
            lines += ["=== Summary ===", msg.summary or "", ""]
            continue

        role = "User" if msg.type == "user" else "Assistant"
        model = f" ({msg.message.model})" if msg.message and msg.message.model else ""
        ts = f" {_format_iso(msg.timestamp)}" if msg.timestamp else ""
        lines.append(f"=== {role}{model}{ts} ===")

        content = msg.message.content if msg.message else None
        if isinstance(content, str):
            lines.append(sanitize_text(content))
        elif isinstance(content, list):
            lines.append(blocks_to_text(content, strip_tools))
        lines.append("")

    return "\n".join(lines)


# ═══════════════════════════════════════════════════════════════════════════════
# MARKDOWN
# ═══════════════════════════════════════════════════════════════════════════════


def _render_tool_input(name: str, tool_input: dict[str, Any]) -> str:
    n = name.lower()

    if n == "bash" and tool_input.get("command"):
        return f"```bash\n{tool_input['command']}\n```"

    if n == "edit" and tool_input.get("file_path"):
        parts = [f"**{tool_input['file_path']}**"]
        if tool_input.get("old_string"):
            old = "\n".join(f"- {l}" for l in str(tool_input["old_string"]).split("\n"))
            new = "\n".join(f"+ {l}" for l in str(tool_input.get("new_string") or "").split("\n"))
            parts += ["```diff", old, new, "```"]
        return "\n".join(parts)

    if n in ("read", "write") and tool_input.get("file_path"):
        return f"**{tool_input['file_path']}**"

    if n == "grep" and tool_input.get("pattern"):
        parts = [f"Pattern: `{tool_input['pattern']}`"]
        if tool_input.get("path"):
            parts.append(f"Path: `{tool_input['path']}`")
        if tool_input.get("glob"):
            parts.append(f"Glob: `{tool_input['glob']}`")
        return " | ".join(parts)

    if n == "glob" and tool_input.get("pattern"):
        where = f" in `{tool_input['path']}`" if tool_input.get("path") else ""
        return f"Pattern: `{tool_input['pattern']}`{where}"

    return f"```json\n{json.dumps(tool_input, indent=2)}\n```"


def _details(summary: str, body: str) -> str:
    return f"<details>\n<summary>{summary}</summary>\n\n{body}\n\n</details>"


def _render_blocks(blocks: list[dict[str, Any]], strip_tools: bool = False) -> str:
    parts: list[str] = []

    for block in blocks:
        block_type = block.get("type")
        if strip_tools and block_type != "text":
            continue

        if block_type == "text" and block.get("text"):
            text = sanitize_text(block["text"])
            if text:
                parts.append(text)
        elif block_type == "thinking" and block.get("thinking"):
            parts.append(_details("Thinking", _truncate(block["thinking"], MAX_THINKING_CHARS)))
        elif block_type == "tool_use":
            name = block.get("name") or ""
            tool_input = block.get("input")
            input_str = _render_tool_input(name, tool_input) if isinstance(tool_input, dict) else ""
            parts.append(_details(f"Tool: {name}", input_str))
        elif block_type == "tool_result":
            label = "Error" if block.get("is_error") else "Result"
            parts.append(_details(label, f"```\n{_tool_result_text(block)}\n```"))

    return "\n\n".join(parts)


def export_markdown(
    session: Session,
    messages: list[ConversationMessage],
    strip_tools: bool = False,
) -> str:
    lines = [
        f"# {session.display}",
        "",
        f"**Project:** {session.project_name} (`{session.project}`)",
        f"**Date:** {_format_time(session.timestamp)}",
        f"**Session ID:** `{session.id}`",
        "",
        "---",
        "",
    ]

    for msg in messages:
        if msg.type == "summary":
            lines += [f"> **Summary:** {msg.summary or ''}", ""]
            continue

        role = "User" if msg.type == "user" else "Assistant"
        model = f" *({msg.message.model})*" if msg.message and msg.message.model else ""
        lines += [f"## {role}{model}", ""]

        content = msg.message.content if msg.message else None
        if isinstance(content, str):
            lines.append(sanitize_text(content))
        elif isinstance(content, list):
            lines.append(_render_blocks(content, strip_tools))
        lines.append("")

    return "\n".join(lines)


# ═══════════════════════════════════════════════════════════════════════════════
# REGISTRY
# ═══════════════════════════════════════════════════════════════════════════════

Exporter = Callable[[Session, list[ConversationMessage], bool], str]

# format -> (exporter, content type)
EXPORTERS: dict[str, tuple[Exporter, str]] = {
    "json": (export_json, "application/json"),
    "md": (export_markdown, "text/markdown"),
    "txt": (export_text, "text/plain"),
}


def get_exporter(fmt: str) -> tuple[Exporter, str]:
    """Look up an exporter by format name.

    Raises:
        UnsupportedFormatError: If no exporter handles `fmt`
    """
    try:
        return EXPORTERS[fmt]
    except KeyError:
        raise UnsupportedFormatError(fmt) from None


def export_conversation(
    fmt: str,
    session: Session,
    messages: list[ConversationMessage],
    strip_tools: bool = False,
) -> tuple[str, str]:
    """Render a conversation.

    Returns:
        (content, file name)
    """
    exporter, _ = get_exporter(fmt)
    content = exporter(session, messages, strip_tools)
    return content, f"claude-{safe_filename(session.display)}.{fmt}"
