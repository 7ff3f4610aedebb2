"""Tests for ragwatch.manager."""

import asyncio
from unittest import mock

import pytest

from ragwatch.filters import IndexingConfig
from ragwatch.manager import WatcherManager
from ragwatch.watcher import WatcherState


class _NullIndexer:
    indexing = IndexingConfig()

    async def index_single_file(self, root, relative_path):
        return None

    async def remove_file_from_index(self, relative_path):
        return 0

    async def remove_directory_from_index(self, relative_dir):
        return 0


@pytest.fixture
def roots(tmp_path):
    first = tmp_path / "first"
    second = tmp_path / "second"
    first.mkdir()
    second.mkdir()
    return first, second


class TestWatcherManager:
    def test_initially_idle(self):
        manager = WatcherManager()
        assert not manager.is_watching()
        assert manager.get_current_watched_path() is None
        assert manager.current_watcher is None

    @pytest.mark.asyncio
    async def test_start_watching_project(self, roots):
        first, _ = roots
        manager = WatcherManager()
        watcher = manager.start_watching_project(first, _NullIndexer())
        try:
            assert manager.is_watching()
            assert manager.get_current_watched_path() == first.resolve()
            assert manager.current_watcher is watcher
        finally:
            manager.stop_current_watcher()

    @pytest.mark.asyncio
    async def test_single_active_watcher(self, roots):
        first, second = roots
        manager = WatcherManager()
        old = manager.start_watching_project(first, _NullIndexer())
        new = manager.start_watching_project(second, _NullIndexer())
        try:
            assert old.state is WatcherState.STOPPED
            assert new.is_watching
            assert manager.get_current_watched_path() == second.resolve()
        finally:
            manager.stop_current_watcher()

    @pytest.mark.asyncio
    async def test_stop_current_watcher(self, roots):
        first, _ = roots
        manager = WatcherManager()
        watcher = manager.start_watching_project(first, _NullIndexer())
        manager.stop_current_watcher()
        assert not manager.is_watching()
        assert manager.get_current_watched_path() is None
        assert not watcher.is_watching
        # Second stop is a no-op
        manager.stop_current_watcher()

    @pytest.mark.asyncio
    async def test_watcher_kwargs_forwarded(self, roots):
        first, _ = roots
        manager = WatcherManager()
        watcher = manager.start_watching_project(
            first, _NullIndexer(), debounce_seconds=1.5, max_workers=7
        )
        try:
            assert watcher.debounce_seconds == 1.5
            assert watcher.max_workers == 7
        finally:
            manager.stop_current_watcher()

    @pytest.mark.asyncio
    async def test_stop_errors_are_logged_not_raised(self, roots):
        first, _ = roots
        manager = WatcherManager()
        watcher = manager.start_watching_project(first, _NullIndexer())
        real_stop = watcher.stop_watching
        with mock.patch.object(watcher, "stop_watching", side_effect=OSError("busy")):
            manager.stop_current_watcher()
        assert manager.current_watcher is None
        real_stop()

    @pytest.mark.asyncio
    async def test_managers_are_independent(self, roots):
        first, second = roots
        one, two = WatcherManager(), WatcherManager()
        one.start_watching_project(first, _NullIndexer())
        two.start_watching_project(second, _NullIndexer())
        try:
            assert one.get_current_watched_path() == first.resolve()
            assert two.get_current_watched_path() == second.resolve()
        finally:
            one.stop_current_watcher()
            two.stop_current_watcher()

    @pytest.mark.asyncio
    async def test_failed_start_leaves_no_watcher(self, tmp_path):
        manager = WatcherManager()
        with pytest.raises(ValueError):
            manager.start_watching_project(tmp_path / "missing", _NullIndexer())
        assert not manager.is_watching()

    @pytest.mark.asyncio
    async def test_queries_from_another_thread(self, roots):
        first, _ = roots
        manager = WatcherManager()
        manager.start_watching_project(first, _NullIndexer())
        try:
            assert await asyncio.to_thread(manager.is_watching)
            path = await asyncio.to_thread(manager.get_current_watched_path)
            assert path == first.resolve()
        finally:
            manager.stop_current_watcher()
