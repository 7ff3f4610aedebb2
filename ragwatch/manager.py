"""Coordinator that keeps at most one project watcher active."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

from ragwatch.watcher import Indexer, ProjectFileWatcher

logger = logging.getLogger(__name__)


class WatcherManager:
    """Holds the single active ``ProjectFileWatcher``.

    Create one per application and pass it to whoever needs to start or
    query watching.  Starting and stopping touch the watcher's event loop,
    so call ``start_watching_project`` and ``stop_current_watcher`` from the
    loop's thread; the read-only queries are safe from any thread.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._current: ProjectFileWatcher | None = None

    @property
    def current_watcher(self) -> ProjectFileWatcher | None:
        with self._lock:
            return self._current

    def start_watching_project(
        self, root: str | Path, indexer: Indexer, **watcher_kwargs: Any
    ) -> ProjectFileWatcher:
        """Stop the current watcher, then start watching *root*."""
        with self._lock:
            self._stop_locked()
            watcher = ProjectFileWatcher(root, indexer, **watcher_kwargs)
            watcher.start_watching()
            self._current = watcher
            return watcher

    def stop_current_watcher(self) -> None:
        with self._lock:
            self._stop_locked()

    def _stop_locked(self) -> None:
        watcher, self._current = self._current, None
        if watcher is None:
            return
        try:
            watcher.stop_watching()
        except Exception as e:
            logger.warning("Error stopping watcher for %s: %s", watcher.watched_path, e)

    def is_watching(self) -> bool:
        with self._lock:
            return self._current is not None and self._current.is_watching

    def get_current_watched_path(self) -> Path | None:
        with self._lock:
            if self._current is None or not self._current.is_watching:
                return None
            return self._current.watched_path
