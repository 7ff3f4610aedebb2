"""Keeps a project's vector index in sync with changes on disk.

watchdog delivers notifications on its observer thread; the handler only
classifies them and posts them to the event loop.  On the loop:

- file created/modified events are debounced per path and then dispatched
  as ``index_single_file`` tasks, bounded by a semaphore
- file deletions are dispatched immediately as ``remove_file_from_index``
- a deleted or moved directory drops its watches and the rows of every
  file indexed below it
- new directories are registered (one non-recursive watch each) and
  rescanned once, so files created before registration are not missed
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Protocol

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import ObservedWatch

from ragwatch import config
from ragwatch.errors import WatcherError
from ragwatch.filters import ExclusionRules, IndexingConfig, relative_posix

logger = logging.getLogger(__name__)


class Indexer(Protocol):
    """The part of ``VectorStore`` the watcher drives."""

    async def index_single_file(self, root: str | Path, relative_path: str | Path) -> None: ...

    async def remove_file_from_index(self, relative_path: str | Path) -> int: ...

    async def remove_directory_from_index(self, relative_dir: str | Path) -> int: ...


class WatcherState(enum.Enum):
    STOPPED = "stopped"
    WATCHING = "watching"


class DebounceState(enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    FIRING = "firing"


@dataclass
class PendingDebounce:
    """Debounce bookkeeping for one relative path."""

    path: str
    state: DebounceState = DebounceState.IDLE
    handle: asyncio.TimerHandle | None = None
    last_event: float = 0.0


class _EventForwarder(FileSystemEventHandler):
    """Posts watchdog events from the observer thread to the event loop."""

    def __init__(self, watcher: ProjectFileWatcher) -> None:
        super().__init__()
        self._watcher = watcher

    def on_created(self, event: FileSystemEvent) -> None:
        self._watcher._post("created", event)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._watcher._post("modified", event)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._watcher._post("deleted", event)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._watcher._post("moved", event)


class ProjectFileWatcher:
    """Watches one project tree and drives incremental index updates."""

    def __init__(
        self,
        project_root: str | Path,
        indexer: Indexer,
        indexing: IndexingConfig | None = None,
        debounce_seconds: float | None = None,
        max_workers: int | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.project_root = Path(project_root).resolve()
        self.indexer = indexer
        self.indexing = (
            indexing or getattr(indexer, "indexing", None) or config.indexing_config()
        )
        self.debounce_seconds = (
            debounce_seconds if debounce_seconds is not None else config.DEBOUNCE_MS / 1000.0
        )
        self.max_workers = max(1, max_workers or config.WATCH_WORKERS)

        self._loop = loop
        self._state = WatcherState.STOPPED
        self._rules: ExclusionRules | None = None
        self._observer: Any = None
        self._handler = _EventForwarder(self)
        self._watches: dict[str, ObservedWatch] = {}
        self._pending: dict[str, PendingDebounce] = {}
        self._tasks: set[asyncio.Task] = set()
        self._semaphore: asyncio.Semaphore | None = None

    # ── introspection ──

    @property
    def state(self) -> WatcherState:
        return self._state

    @property
    def is_watching(self) -> bool:
        return self._state is WatcherState.WATCHING

    @property
    def watched_path(self) -> Path:
        return self.project_root

    @property
    def watched_directories(self) -> list[str]:
        return sorted(self._watches)

    @property
    def watched_directory_count(self) -> int:
        return len(self._watches)

    @property
    def pending_count(self) -> int:
        return sum(
            1 for entry in self._pending.values() if entry.state is DebounceState.PENDING
        )

    # ── lifecycle ──

    def start_watching(self) -> None:
        """Register the project tree and start receiving events.

        Must be called with an event loop running (or one passed in); a
        second call while watching is a no-op.
        """
        if self._state is WatcherState.WATCHING:
            return
        if not self.project_root.is_dir():
            raise ValueError(f"Not a directory: {self.project_root}")

        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._rules = ExclusionRules(self.project_root, self.indexing)
        self._semaphore = asyncio.Semaphore(self.max_workers)

        self._observer = Observer()
        self._observer.daemon = True
        self._observer.start()
        self._state = WatcherState.WATCHING

        self._register_tree(self.project_root)
        logger.info(
            "Watching %s (%d directories)", self.project_root, len(self._watches)
        )

    def stop_watching(self) -> None:
        """Cancel pending debounces and release every watch.

        Tasks already dispatched keep running; ``wait_idle`` awaits them.
        """
        if self._state is WatcherState.STOPPED:
            return
        self._state = WatcherState.STOPPED

        for entry in self._pending.values():
            if entry.handle is not None:
                entry.handle.cancel()
        self._pending.clear()

        observer = self._observer
        self._observer = None
        if observer is not None:
            observer.unschedule_all()
            observer.stop()
            observer.join(timeout=2.0)
        self._watches.clear()
        logger.info("Stopped watching %s", self.project_root)

    async def wait_idle(self) -> None:
        """Wait until no debounce is pending and no dispatched task is running."""
        while True:
            running = {task for task in self._tasks if not task.done()}
            if running:
                await asyncio.wait(running)
            elif self._tasks:
                # Let done callbacks discard finished tasks
                await asyncio.sleep(0)
            elif self.pending_count:
                await asyncio.sleep(max(self.debounce_seconds / 2, 0.01))
            else:
                return

    # ── directory registration ──

    def _register_tree(self, directory: Path) -> list[Path]:
        assert self._rules is not None
        registered = []
        for path in self._rules.walk_directories(directory):
            if self._register_directory(path):
                registered.append(path)
        return registered

    def _register_directory(self, directory: Path) -> bool:
        key = str(directory)
        if key in self._watches or self._observer is None:
            return False
        try:
            watch = self._observer.schedule(self._handler, key, recursive=False)
        except OSError as e:
            logger.warning("%s", WatcherError(key, e))
            return False
        self._watches[key] = watch
        logger.debug("Registered %s", key)
        return True

    def _unregister_tree(self, directory: str) -> None:
        prefix = directory.rstrip(os.sep) + os.sep
        for key in [k for k in self._watches if k == directory or k.startswith(prefix)]:
            watch = self._watches.pop(key)
            if self._observer is None:
                continue
            try:
                self._observer.unschedule(watch)
            except (KeyError, OSError) as e:
                logger.debug("Unschedule of %s failed: %s", key, e)
            logger.debug("Unregistered %s", key)

    def _rescan(self, directory: Path) -> None:
        """Schedule every file already present below a newly seen directory."""
        assert self._rules is not None
        for path in self._rules.walk_directories(directory):
            try:
                entries = list(os.scandir(path))
            except OSError as e:
                logger.debug("Rescan of %s failed: %s", path, e)
                continue
            for entry in entries:
                if entry.is_file(follow_symlinks=False):
                    self._on_file_changed(entry.path)

    # ── event handling (observer thread → loop) ──

    def _post(self, kind: str, event: FileSystemEvent) -> None:
        loop = self._loop
        if loop is None or self._state is not WatcherState.WATCHING:
            return
        src = os.fsdecode(event.src_path)
        dest_raw = getattr(event, "dest_path", "")
        dest = os.fsdecode(dest_raw) if dest_raw else None
        try:
            loop.call_soon_threadsafe(
                self._handle_event, kind, event.is_directory, src, dest
            )
        except RuntimeError:
            # Loop already closed
            logger.debug("Dropped %s event for %s", kind, src)

    def _handle_event(
        self, kind: str, is_directory: bool, src: str, dest: str | None
    ) -> None:
        if self._state is not WatcherState.WATCHING:
            return
        logger.debug("Event %s dir=%s %s%s", kind, is_directory, src, f" -> {dest}" if dest else "")

        if is_directory:
            if kind == "created":
                self._on_directory_created(src)
            elif kind in ("deleted", "moved"):
                self._on_directory_removed(src)
                if dest:
                    self._on_directory_created(dest)
            return

        if kind in ("created", "modified"):
            self._on_file_changed(src)
        elif kind == "deleted":
            self._on_file_deleted(src)
        elif kind == "moved":
            self._on_file_deleted(src)
            if dest:
                self._on_file_changed(dest)

    def _on_directory_created(self, path: str) -> None:
        assert self._rules is not None
        directory = Path(path)
        if relative_posix(self.project_root, directory) is None:
            return
        if self._rules.skip_directory(directory):
            return
        registered = self._register_tree(directory)
        if registered:
            logger.info("Watching new directory %s", directory)
        self._rescan(directory)

    def _on_directory_removed(self, path: str) -> None:
        assert self._rules is not None
        self._unregister_tree(path)
        directory = Path(path)
        rel = relative_posix(self.project_root, directory)
        if not rel or rel == "." or self._rules.skip_directory(directory):
            return
        prefix = rel + "/"
        for key in [k for k in self._pending if k.startswith(prefix)]:
            entry = self._pending[key]
            if entry.state is DebounceState.PENDING:
                if entry.handle is not None:
                    entry.handle.cancel()
                del self._pending[key]
        self._spawn(self.indexer.remove_directory_from_index(rel), f"remove {rel}/")

    def _on_file_changed(self, path: str) -> None:
        assert self._rules is not None
        if not self._rules.accepts_file(path, check_content=False):
            return
        rel = relative_posix(self.project_root, Path(path))
        if rel is not None:
            self._schedule(rel)

    def _on_file_deleted(self, path: str) -> None:
        assert self._rules is not None
        if not self._rules.accepts_file(path, check_content=False):
            return
        rel = relative_posix(self.project_root, Path(path))
        if rel is None:
            return
        entry = self._pending.get(rel)
        if entry is not None and entry.state is DebounceState.PENDING:
            if entry.handle is not None:
                entry.handle.cancel()
            del self._pending[rel]
        self._spawn(self.indexer.remove_file_from_index(rel), f"remove {rel}")

    # ── debounce ──

    def _schedule(self, rel: str) -> None:
        assert self._loop is not None
        entry = self._pending.get(rel)
        if entry is None:
            entry = self._pending[rel] = PendingDebounce(rel)
        if entry.handle is not None:
            entry.handle.cancel()
        entry.state = DebounceState.PENDING
        entry.last_event = self._loop.time()
        entry.handle = self._loop.call_later(self.debounce_seconds, self._fire, rel)

    def _fire(self, rel: str) -> None:
        entry = self._pending.get(rel)
        if entry is None or self._state is not WatcherState.WATCHING:
            return
        entry.state = DebounceState.FIRING
        entry.handle = None
        self._spawn(self._index_file(rel, entry), f"index {rel}")

    async def _index_file(self, rel: str, entry: PendingDebounce) -> None:
        assert self._rules is not None
        try:
            full_path = self.project_root / rel
            if full_path.exists() and not self._rules.accepts_file(full_path):
                removed = await self.indexer.remove_file_from_index(rel)
                logger.debug("Ignoring %s (not eligible); removed %d rows", rel, removed)
                return
            await self.indexer.index_single_file(self.project_root, rel)
            logger.debug("Re-indexed %s", rel)
        finally:
            # A newer event may have re-armed the entry meanwhile
            if self._pending.get(rel) is entry and entry.state is DebounceState.FIRING:
                entry.state = DebounceState.IDLE
                del self._pending[rel]

    # ── worker pool ──

    def _spawn(self, work: Awaitable[Any], description: str) -> None:
        assert self._loop is not None
        task = self._loop.create_task(self._run_guarded(work, description))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_guarded(self, work: Awaitable[Any], description: str) -> None:
        assert self._semaphore is not None
        try:
            async with self._semaphore:
                await work
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Watcher task failed (%s): %s", description, e, exc_info=True)
