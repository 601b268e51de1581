"""Filesystem watcher that keeps Storage coherent with the Claude directory.

Watches history.jsonl and the projects tree, debounces bursts of events,
and applies them on the asyncio loop:
- history.jsonl changed or deleted -> invalidate history cache, emit "sessions-changed"
- transcript changed -> index the file, emit "conversation-changed"
- transcript deleted -> emit "conversation-changed" (index entries are never evicted)

Threading model: watchdog delivers events on its observer thread and a
worker thread waits out the debounce window. Neither thread touches
Storage; finished batches are handed to the event loop through a bounded
asyncio.Queue and processed there.
"""

import asyncio
import inspect
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from claude_run_mcp import ClaudeRunError
from claude_run_mcp.projects_utils import HISTORY_FILE, TRANSCRIPT_EXT, session_id_from_path

if TYPE_CHECKING:
    from claude_run_mcp.storage import Storage

log = logging.getLogger("claude_run_mcp.watcher")

# Notification names delivered to subscribers
SESSIONS_CHANGED = "sessions-changed"
CONVERSATION_CHANGED = "conversation-changed"

# Event kinds
KIND_HISTORY = "history"
KIND_TRANSCRIPT = "transcript"

DEFAULT_DEBOUNCE = 0.02
DEFAULT_POLL_INTERVAL = 0.01
DEFAULT_QUEUE_SIZE = 256

# Subscriber signature: callback(event_name, session_id_or_None)
Subscriber = Callable[[str, "str | None"], Any]


class WatcherStartError(ClaudeRunError):
    """Raised when the projects tree cannot be watched."""


# ═══════════════════════════════════════════════════════════════════════════════
# EVENT QUEUE
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass
class FileEvent:
    """Represents a file change event."""

    path: Path
    kind: str  # KIND_HISTORY | KIND_TRANSCRIPT
    event_type: str  # "created", "modified", "moved", "deleted"
    timestamp: float = field(default_factory=time.time)


class DebouncedQueue:
    """Queue with per-file debouncing.

    Coalesces rapid changes into a single event per file and releases each
    file once that file has been quiet for the quiet period, so a file that
    keeps changing never holds back the others.
    """

    def __init__(self, quiet_period: float = DEFAULT_DEBOUNCE):
        """Initialize the debounced queue.

        Args:
            quiet_period: Seconds to wait after last event before processing
        """
        self.quiet_period = quiet_period
        self._pending: dict[str, tuple[FileEvent, float]] = {}  # path -> (latest event, last seen)
        self._lock = threading.Lock()

    def put(self, event: FileEvent) -> None:
        """Add an event to the queue (coalesces with pending events)."""
        with self._lock:
            self._pending[str(event.path)] = (event, time.monotonic())

    def get_ready_events(self) -> list[FileEvent]:
        """Get events whose file has been quiet for the quiet period.

        Returns:
            Ready events in arrival order; files still changing stay pending
        """
        with self._lock:
            if not self._pending:
                return []

            now = time.monotonic()
            ready = [
                key for key, (_, last_seen) in self._pending.items()
                if now - last_seen >= self.quiet_period
            ]
            return [self._pending.pop(key)[0] for key in ready]

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def clear(self) -> None:
        """Clear all pending events."""
        with self._lock:
            self._pending.clear()


def _event_path_to_path(event_path: bytes | str) -> Path:
    """Convert watchdog event path to Path, handling bytes properly."""
    if isinstance(event_path, bytes):
        return Path(event_path.decode("utf-8", errors="replace"))
    return Path(event_path)


# ═══════════════════════════════════════════════════════════════════════════════
# WATCHDOG HANDLER
# ═══════════════════════════════════════════════════════════════════════════════


class ClaudeDirWatchHandler(FileSystemEventHandler):
    """Watchdog event handler for history.jsonl and transcript files.

    Only does syntactic path checks; existence is verified later when the
    file is actually read. Deletions are queued too so that subscribers
    hear about them, but never evict index entries.
    """

    def __init__(
        self,
        queue: DebouncedQueue,
        history_file: str | None = HISTORY_FILE,
        transcript_ext: str | None = TRANSCRIPT_EXT,
    ):
        """Initialize the handler.

        Args:
            queue: DebouncedQueue to add events to
            history_file: Registry file name to match (None to ignore)
            transcript_ext: Transcript extension to match (None to ignore)
        """
        super().__init__()
        self.queue = queue
        self.history_file = history_file
        self.transcript_ext = transcript_ext

    def classify(self, path: Path) -> str | None:
        if self.history_file is not None and path.name == self.history_file:
            return KIND_HISTORY
        if (
            self.transcript_ext is not None
            and session_id_from_path(path, self.transcript_ext) is not None
        ):
            return KIND_TRANSCRIPT
        return None

    def _queue(self, path: Path, event_type: str) -> None:
        kind = self.classify(path)
        if kind is not None:
            log.debug(f"{kind} file {event_type}: {path}")
            self.queue.put(FileEvent(path=path, kind=kind, event_type=event_type))

    def on_created(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        try:
            self._queue(_event_path_to_path(event.src_path), "created")
        except Exception as e:
            log.warning(f"ClaudeDirWatchHandler.on_created failed for {event.src_path}: {e}")

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        try:
            self._queue(_event_path_to_path(event.src_path), "modified")
        except Exception as e:
            log.warning(f"ClaudeDirWatchHandler.on_modified failed for {event.src_path}: {e}")

    def on_moved(self, event: FileSystemEvent) -> None:
        # Atomic rename-into-place writers show up as moves onto the target
        if event.is_directory:
            return
        try:
            self._queue(_event_path_to_path(event.dest_path), "moved")
        except Exception as e:
            log.warning(f"ClaudeDirWatchHandler.on_moved failed for {event.dest_path}: {e}")

    def on_deleted(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        try:
            self._queue(_event_path_to_path(event.src_path), "deleted")
        except Exception as e:
            log.warning(f"ClaudeDirWatchHandler.on_deleted failed for {event.src_path}: {e}")


# ═══════════════════════════════════════════════════════════════════════════════
# WORKER THREAD
# ═══════════════════════════════════════════════════════════════════════════════


class DebounceWorker(threading.Thread):
    """Background thread that hands debounced batches to the event loop."""

    def __init__(
        self,
        queue: DebouncedQueue,
        handoff: Callable[[list[FileEvent]], None],
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        """Initialize the worker.

        Args:
            queue: DebouncedQueue with file events
            handoff: Called from this thread with each ready batch
            poll_interval: How often to check for events (seconds)
        """
        super().__init__(daemon=True, name="claude-run-watcher")
        self.queue = queue
        self.handoff = handoff
        self.poll_interval = poll_interval
        self._stop_event = threading.Event()

    def run(self) -> None:
        log.debug("DebounceWorker started")
        while not self._stop_event.is_set():
            events = self.queue.get_ready_events()
            if events:
                try:
                    self.handoff(events)
                except Exception:
                    log.exception("Failed to hand off watcher events")
            self._stop_event.wait(self.poll_interval)
        log.debug("DebounceWorker stopped")

    def stop(self) -> None:
        """Signal worker to stop."""
        self._stop_event.set()


# ═══════════════════════════════════════════════════════════════════════════════
# CHANGE WATCHER
# ═══════════════════════════════════════════════════════════════════════════════


class ChangeWatcher:
    """Watches a Claude directory and keeps a Storage instance current.

    Must be started from a coroutine running on the loop that owns the
    Storage; all Storage mutations and subscriber calls happen on that loop.
    """

    def __init__(
        self,
        storage: "Storage",
        debounce: float = DEFAULT_DEBOUNCE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        """Initialize the watcher.

        Args:
            storage: Storage to invalidate / update
            debounce: Quiet period in seconds before a burst is processed
            poll_interval: How often the worker checks the debounce queue
            queue_size: Max batches waiting on the event loop
        """
        self.storage = storage
        self.debounce = debounce
        self.poll_interval = poll_interval
        self.queue_size = queue_size

        self._subscribers: list[Subscriber] = []
        self._loop: asyncio.AbstractEventLoop | None = None
        self._batches: asyncio.Queue[list[FileEvent]] | None = None
        self._consumer: asyncio.Task | None = None
        self._observers: list[Any] = []
        self._worker: DebounceWorker | None = None
        self._debounced: DebouncedQueue | None = None
        self._started_at: float | None = None
        self.dropped_batches = 0

    # Subscribers

    def subscribe(self, callback: Subscriber) -> None:
        """Register a callback(event_name, session_id) for notifications.

        Callbacks may be plain functions or coroutine functions.
        """
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    async def _emit(self, event_name: str, session_id: str | None = None) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(event_name, session_id)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                log.exception(f"Subscriber failed for {event_name}")

    # Lifecycle

    @property
    def is_running(self) -> bool:
        return self._worker is not None

    def start(self) -> None:
        """Start watching.

        Raises:
            WatcherStartError: If the projects tree cannot be watched.
                Failing to watch history.jsonl's directory is only logged.
            RuntimeError: If called outside a running event loop
        """
        if self.is_running:
            return

        self._loop = asyncio.get_running_loop()
        self._batches = asyncio.Queue(maxsize=self.queue_size)
        self._debounced = DebouncedQueue(quiet_period=self.debounce)

        projects_dir = self.storage.projects_dir
        claude_dir = self.storage.claude_dir
        history_file = self.storage.history_path.name
        transcript_ext = self.storage.transcript_ext

        if not projects_dir.is_dir():
            raise WatcherStartError(f"Projects directory does not exist: {projects_dir}")

        projects_observer = Observer()
        try:
            projects_observer.schedule(
                ClaudeDirWatchHandler(self._debounced, history_file=None, transcript_ext=transcript_ext),
                str(projects_dir),
                recursive=True,
            )
            projects_observer.start()
        except OSError as e:
            raise WatcherStartError(f"Failed to watch {projects_dir}: {e}") from e
        self._observers.append(projects_observer)

        # history.jsonl may not exist yet, so watch its directory instead
        history_observer = Observer()
        try:
            history_observer.schedule(
                ClaudeDirWatchHandler(self._debounced, history_file=history_file, transcript_ext=None),
                str(claude_dir),
                recursive=False,
            )
            history_observer.start()
            self._observers.append(history_observer)
        except OSError as e:
            log.warning(f"Not watching {self.storage.history_path}: {e}")

        self._worker = DebounceWorker(
            queue=self._debounced,
            handoff=self._handoff,
            poll_interval=self.poll_interval,
        )
        self._worker.start()
        self._consumer = self._loop.create_task(self._consume(self._batches))
        self._started_at = time.time()
        log.info(f"Watching {claude_dir} (debounce={self.debounce * 1000:.0f}ms)")

    def stop(self) -> None:
        """Stop observers, worker and consumer task."""
        if not self.is_running:
            return

        log.info("Stopping change watcher")
        for observer in self._observers:
            observer.stop()
        for observer in self._observers:
            observer.join(timeout=5)
        self._observers = []

        if self._worker is not None:
            self._worker.stop()
            self._worker.join(timeout=5)
            self._worker = None

        if self._debounced is not None:
            self._debounced.clear()

        if self._consumer is not None:
            self._consumer.cancel()
            self._consumer = None
        self._started_at = None

    def get_status(self) -> dict:
        if not self.is_running:
            return {"is_watching": False}
        return {
            "is_watching": True,
            "claude_dir": str(self.storage.claude_dir),
            "debounce_ms": round(self.debounce * 1000),
            "started_at": self._started_at,
            "subscribers": len(self._subscribers),
            "pending_events": self._debounced.pending_count() if self._debounced else 0,
            "dropped_batches": self.dropped_batches,
        }

    # Hand-off from the worker thread to the loop

    def _handoff(self, events: list[FileEvent]) -> None:
        """Called on the worker thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._enqueue, events)
        except RuntimeError:
            log.debug("Event loop closed, dropping watcher batch")

    def _enqueue(self, events: list[FileEvent]) -> None:
        """Called on the event loop."""
        if self._batches is None:
            return
        try:
            self._batches.put_nowait(events)
        except asyncio.QueueFull:
            self.dropped_batches += 1
            log.warning(f"Watcher queue full, dropped {len(events)} events")

    async def _consume(self, batches: asyncio.Queue) -> None:
        while True:
            events = await batches.get()
            try:
                await self.process_events(events)
            except Exception:
                log.exception("Failed to process watcher events")

    async def process_events(self, events: list[FileEvent]) -> None:
        """Apply a batch of debounced events to Storage and notify subscribers."""
        sessions_changed = False
        changed_sessions: list[tuple[str, FileEvent]] = []

        for event in events:
            if event.kind == KIND_HISTORY:
                sessions_changed = True
            elif event.kind == KIND_TRANSCRIPT:
                session_id = session_id_from_path(event.path, self.storage.transcript_ext)
                if session_id is not None:
                    changed_sessions.append((session_id, event))

        if sessions_changed:
            await self.storage.invalidate_history_cache()
            await self._emit(SESSIONS_CHANGED)

        for session_id, event in changed_sessions:
            # Index entries are never evicted, so a deletion only notifies
            if event.event_type != "deleted":
                await self.storage.add_to_file_index(session_id, event.path)
            await self._emit(CONVERSATION_CHANGED, session_id)


# ═══════════════════════════════════════════════════════════════════════════════
# CHANGE FEED
# ═══════════════════════════════════════════════════════════════════════════════


class ChangeFeed:
    """Bounded buffer of notifications for clients that poll instead of subscribe."""

    def __init__(self, maxlen: int = 500):
        self._events: deque[dict] = deque(maxlen=maxlen)

    def __call__(self, event_name: str, session_id: str | None = None) -> None:
        record: dict[str, Any] = {"event": event_name, "at": time.time()}
        if session_id is not None:
            record["session_id"] = session_id
        self._events.append(record)

    def __len__(self) -> int:
        return len(self._events)

    def drain(self) -> list[dict]:
        """Return and clear all buffered notifications, oldest first."""
        events = list(self._events)
        self._events.clear()
        return events
