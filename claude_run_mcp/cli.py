"""CLI for claude-run.

Commands:
    serve     - Run MCP server (stdio mode)
    sessions  - List sessions, newest first
    projects  - List projects
    show      - Print a conversation
    tail      - Follow a conversation as it is written
    export    - Export a conversation to json, md or txt
    config    - Show effective configuration
    version   - Show version
"""

import asyncio
from datetime import datetime
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from claude_run_mcp import __version__
from claude_run_mcp.config import ConfigError, RunConfig, load_config
from claude_run_mcp.exporters import UnsupportedFormatError, blocks_to_text, export_conversation, sanitize_text
from claude_run_mcp.models import ConversationMessage
from claude_run_mcp.storage import Storage
from claude_run_mcp.watcher import CONVERSATION_CHANGED, ChangeWatcher, WatcherStartError

app = typer.Typer(
    name="claude-run-mcp",
    help="Browse Claude Code conversation history",
    no_args_is_help=True,
)
console = Console()

ClaudeDirOption = typer.Option(None, "--dir", "-d", help="Claude directory (default: ~/.claude)")


def _load_config(claude_dir: Path | None) -> RunConfig:
    try:
        return load_config(claude_dir=claude_dir)
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


def _make_storage(config: RunConfig) -> Storage:
    return Storage(
        config.claude_dir,
        history_file=config.history_file,
        transcript_ext=config.transcript_ext,
    )


def _message_text(msg: ConversationMessage) -> str:
    if msg.type == "summary":
        return msg.summary or ""
    content = msg.message.content if msg.message else None
    if isinstance(content, str):
        return sanitize_text(content)
    if isinstance(content, list):
        return blocks_to_text(content)
    return ""


def _print_message(msg: ConversationMessage) -> None:
    styles = {"user": "bold cyan", "assistant": "bold green", "summary": "bold magenta"}
    label = msg.type.capitalize()
    if msg.message and msg.message.model:
        label += f" ({msg.message.model})"
    console.print(f"[{styles.get(msg.type, 'bold')}]── {label}[/]")
    text = _message_text(msg)
    if text:
        console.print(text, markup=False, highlight=False)
    console.print()


@app.command()
def serve():
    """Run MCP server (stdio mode)."""
    from claude_run_mcp.server import main as server_main
    server_main()


@app.command()
def sessions(
    claude_dir: Path = ClaudeDirOption,
    project: str = typer.Option(None, "--project", "-p", help="Only sessions of this project path"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum sessions to show"),
):
    """List sessions, newest first."""
    config = _load_config(claude_dir)

    async def _run():
        storage = _make_storage(config)
        await storage.load()
        return await storage.get_sessions()

    found = asyncio.run(_run())
    if project:
        found = [s for s in found if s.project == project]

    if not found:
        console.print("[yellow]No sessions found[/yellow]")
        return

    table = Table(title=f"Sessions ({len(found)})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Project", style="green")
    table.add_column("When")
    table.add_column("Title")
    for s in found[:limit]:
        when = datetime.fromtimestamp(s.timestamp / 1000).strftime("%Y-%m-%d %H:%M")
        table.add_row(s.id, s.project_name, when, s.display[:80])
    console.print(table)


@app.command()
def projects(claude_dir: Path = ClaudeDirOption):
    """List projects that have sessions."""
    config = _load_config(claude_dir)

    async def _run():
        storage = _make_storage(config)
        await storage.load()
        return await storage.get_projects()

    for project in asyncio.run(_run()):
        console.print(project, markup=False, highlight=False)


@app.command()
def show(session_id: str, claude_dir: Path = ClaudeDirOption):
    """Print a whole conversation."""
    config = _load_config(claude_dir)

    async def _run():
        storage = _make_storage(config)
        await storage.load()
        return await storage.get_conversation(session_id)

    messages = asyncio.run(_run())
    if not messages:
        console.print(f"[yellow]No messages for session {session_id}[/yellow]")
        raise typer.Exit(1)
    for msg in messages:
        _print_message(msg)


async def _begin_tail(storage: Storage, watcher: ChangeWatcher, session_id: str, from_start: bool) -> int:
    """Start watching, then take the starting offset.

    Watching begins before the offset is read so that a line appended in
    between still raises a change notification.

    Returns:
        Offset to continue the incremental read from
    """
    watcher.start()

    if from_start:
        # Summaries only come from the full read; messages come from the stream below
        for msg in await storage.get_conversation(session_id):
            if msg.type == "summary":
                _print_message(msg)

    result = await storage.get_conversation_stream(session_id, 0)
    if from_start:
        for msg in result.messages:
            _print_message(msg)
    return result.next_offset


@app.command()
def tail(
    session_id: str,
    claude_dir: Path = ClaudeDirOption,
    from_start: bool = typer.Option(False, "--from-start", help="Print existing messages first"),
):
    """Follow a conversation, printing messages as they are appended."""
    config = _load_config(claude_dir)

    async def _run():
        storage = _make_storage(config)
        await storage.load()

        changed = asyncio.Event()

        def on_change(event: str, changed_id: str | None) -> None:
            if event == CONVERSATION_CHANGED and changed_id == session_id:
                changed.set()

        watcher = ChangeWatcher(
            storage,
            debounce=config.debounce_ms / 1000,
            poll_interval=config.poll_interval_ms / 1000,
            queue_size=config.queue_size,
        )
        watcher.subscribe(on_change)
        try:
            offset = await _begin_tail(storage, watcher, session_id, from_start)
            console.print(f"[dim]Following {session_id} at offset {offset} (Ctrl-C to stop)[/dim]")
            while True:
                await changed.wait()
                changed.clear()
                result = await storage.get_conversation_stream(session_id, offset)
                offset = result.next_offset
                for msg in result.messages:
                    _print_message(msg)
        finally:
            watcher.stop()

    try:
        asyncio.run(_run())
    except WatcherStartError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("[dim]Stopped[/dim]")


@app.command()
def export(
    session_id: str,
    claude_dir: Path = ClaudeDirOption,
    fmt: str = typer.Option("md", "--format", "-f", help="json, md or txt"),
    output: Path = typer.Option(None, "--output", "-o", help="Output file (default: derived from title)"),
    strip_tools: bool = typer.Option(False, "--strip-tools", help="Keep only text blocks"),
):
    """Export a conversation to a file."""
    config = _load_config(claude_dir)

    async def _run():
        storage = _make_storage(config)
        await storage.load()
        session = await storage.get_session_meta(session_id)
        messages = await storage.get_conversation(session_id) if session else []
        return session, messages

    session, messages = asyncio.run(_run())
    if session is None:
        console.print(f"[red]Session not found: {session_id}[/red]")
        raise typer.Exit(1)

    try:
        content, filename = export_conversation(fmt, session, messages, strip_tools)
    except UnsupportedFormatError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    target = output or Path(filename)
    target.write_text(content, encoding="utf-8")
    console.print(f"[green]✓[/green] Exported {len(messages)} messages to {target}")


@app.command()
def config(claude_dir: Path = ClaudeDirOption):
    """Show effective configuration."""
    cfg = _load_config(claude_dir)

    table = Table(title="claude-run configuration", show_header=False)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("claude_dir", str(cfg.claude_dir))
    table.add_row("history", f"{cfg.history_path} ({'exists' if cfg.history_path.exists() else 'missing'})")
    table.add_row("projects", f"{cfg.projects_dir} ({'exists' if cfg.projects_dir.is_dir() else 'missing'})")
    table.add_row("transcript_ext", cfg.transcript_ext)
    table.add_row("debounce_ms", str(cfg.debounce_ms))
    table.add_row("poll_interval_ms", str(cfg.poll_interval_ms))
    table.add_row("queue_size", str(cfg.queue_size))
    console.print(table)


@app.command()
def version():
    """Show version."""
    console.print(f"claude-run-mcp {__version__}")


def main():
    app()


if __name__ == "__main__":
    main()
