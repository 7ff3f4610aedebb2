"""Per-project vector index stored in SQLite with sqlite-vec.

The store is the only component that reads or writes index rows.  It:

1. Walks a project once (``index_project``), chunking and embedding every
   eligible file, skipping files whose content hash is unchanged and
   removing rows of files that disappeared.
2. Replaces the rows of a single file (``index_single_file``) as one
   transaction, so a concurrent search sees either the old chunk set or the
   new one, never a mix.
3. Removes a file's rows (``remove_file_from_index``).
4. Answers nearest-neighbour queries (``similarity_search``) on a separate
   reader connection, concurrently with writes.

Writes for the same path are serialized by a per-path lock.  Embedding runs
outside the store-wide write lock, which is only held for the short SQLite
transaction.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncGenerator, Protocol, Sequence

import aiosqlite
import numpy as np

from ragwatch import config
from ragwatch.chunker import build_file_header, chunk_text
from ragwatch.config import StoreSettings
from ragwatch.embedding import EmbeddingClient
from ragwatch.errors import (
    ConfigurationError,
    EmbeddingError,
    IndexingFailed,
    StorageError,
)
from ragwatch.filters import ExclusionRules, IndexingConfig, compute_md5, relative_posix
from ragwatch.schema import (
    create_project_tables,
    drop_project_table,
    drop_tables,
    open_connection,
    project_table_name,
    table_dimension,
)

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    async def embed(self, text: str) -> np.ndarray: ...


# ── Data Classes ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SearchHit:
    """One nearest-neighbour match."""

    path: str
    chunk_text: str
    distance: float
    chunk_index: int = 0


@dataclass
class IndexingReport:
    """Outcome of a bulk indexing run."""

    file_count: int = 0
    chunk_count: int = 0
    unchanged: int = 0
    skipped: int = 0
    removed: int = 0
    failures: list[tuple[str, str]] = field(default_factory=list)
    duration: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "files": self.file_count,
            "chunks": self.chunk_count,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
            "removed": self.removed,
            "failures": list(self.failures),
            "duration": self.duration,
        }


def _normalize_rel(relative_path: str | Path) -> str:
    if isinstance(relative_path, Path):
        relative_path = relative_path.as_posix()
    rel = relative_path.replace("\\", "/")
    while rel.startswith("./"):
        rel = rel[2:]
    return rel.lstrip("/")


def _decode(data: bytes) -> str:
    """Prefer UTF-8; fall back to a lossy decode rather than failing."""
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("utf-8", errors="replace")


# ── Store ────────────────────────────────────────────────────────────────


class VectorStore:
    """Vector index of one project."""

    project_table_name = staticmethod(project_table_name)
    drop_project_table = staticmethod(drop_project_table)

    def __init__(
        self,
        project_id: str,
        embedder: Embedder | None = None,
        db_path: str | Path | None = None,
        base_table: str | None = None,
        indexing: IndexingConfig | None = None,
        settings: StoreSettings | None = None,
    ) -> None:
        self.project_id = project_id
        self.embedder = embedder or EmbeddingClient()
        self.db_path = Path(db_path) if db_path else config.get_db_path()
        self.base_table = base_table or config.BASE_TABLE
        self.table = project_table_name(self.base_table, project_id)
        self.indexing = indexing or config.indexing_config()
        self.settings = settings or config.store_settings()
        self.last_report: IndexingReport | None = None

        self._writer: aiosqlite.Connection | None = None
        self._reader: aiosqlite.Connection | None = None
        self._dim: int | None = None
        self._open_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._path_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # ── lifecycle ──

    async def open(self) -> VectorStore:
        async with self._open_lock:
            if self._writer is None:
                writer = await open_connection(self.db_path)
                try:
                    reader = await open_connection(self.db_path)
                except StorageError:
                    await writer.close()
                    raise
                self._writer, self._reader = writer, reader
                self._dim = await table_dimension(writer, self.table)
        return self

    async def close(self) -> None:
        """Close the connection pool."""
        async with self._open_lock:
            for conn in (self._reader, self._writer):
                if conn is not None:
                    await conn.close()
            self._writer = self._reader = None

    async def __aenter__(self) -> VectorStore:
        return await self.open()

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _connections(self) -> tuple[aiosqlite.Connection, aiosqlite.Connection]:
        if self._writer is None or self._reader is None:
            await self.open()
        assert self._writer is not None and self._reader is not None
        return self._writer, self._reader

    def _path_lock(self, rel: str) -> asyncio.Lock:
        # Entries vanish once no holder or waiter references the lock
        lock = self._path_locks.get(rel)
        if lock is None:
            lock = self._path_locks[rel] = asyncio.Lock()
        return lock

    @property
    def dimension(self) -> int | None:
        return self._dim

    # ── schema ──

    async def ensure_schema(self, dim: int | None = None) -> int | None:
        """Create the project's tables if missing.

        The dimension comes from ``preferred_dim`` when configured, otherwise
        from *dim*.  Returns the table's dimension, or None while unknown.
        """
        writer, _ = await self._connections()
        if self._dim is None:
            target = self.settings.preferred_dim or dim
            if target is None:
                return None
            async with self._write_lock:
                self._dim = await create_project_tables(
                    writer, self.table, target, self.settings.distance_metric
                )
            logger.info("Index table %s ready (dim=%d)", self.table, self._dim)

        if dim is not None and dim != self._dim:
            raise StorageError(
                f"Embedding dimension mismatch for {self.table}: "
                f"table has {self._dim}, got {dim}"
            )
        return self._dim

    async def drop_index(self) -> None:
        """Drop this project's tables."""
        writer, _ = await self._connections()
        async with self._write_lock:
            await drop_tables(writer, self.table)
            self._dim = None

    # ── reads ──

    async def embed(self, text: str) -> np.ndarray:
        """Embed arbitrary text (e.g. a query) with the indexing backend."""
        return await self.embedder.embed(text)

    async def similarity_search(
        self, query_vector: Sequence[float] | np.ndarray, k: int
    ) -> list[SearchHit]:
        """Return the *k* rows nearest to *query_vector*, closest first."""
        if k <= 0:
            return []
        _, reader = await self._connections()
        dim = self._dim or await table_dimension(reader, self.table)
        if dim is None:
            return []

        vector = np.asarray(query_vector, dtype=np.float32)
        if vector.ndim != 1 or vector.shape[0] != dim:
            raise StorageError(
                f"Query vector has shape {vector.shape}, index expects ({dim},)"
            )

        sql = f"""
            WITH knn AS (
                SELECT rowid, distance
                FROM "{self.table}_vec"
                WHERE embedding MATCH ? AND k = ?
            )
            SELECT c.file_path, c.chunk_text, knn.distance, c.chunk_index
            FROM knn
            JOIN "{self.table}" c ON c.id = knn.rowid
            ORDER BY knn.distance
        """
        try:
            async with reader.execute(sql, (vector.tobytes(), k)) as cursor:
                rows = await cursor.fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Similarity search failed on {self.table}: {e}") from e
        return [
            SearchHit(path=row[0], chunk_text=row[1], distance=float(row[2]), chunk_index=row[3])
            for row in rows
        ]

    async def _stored_hash(self, rel: str) -> str | None:
        _, reader = await self._connections()
        if self._dim is None:
            return None
        try:
            async with reader.execute(
                f'SELECT content_hash FROM "{self.table}" '
                "WHERE project_id = ? AND file_path = ? LIMIT 1",
                (self.project_id, rel),
            ) as cursor:
                row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot read stored hash for {rel}: {e}") from e
        return row[0] if row else None

    async def indexed_paths(self) -> set[str]:
        """Return every file path that currently has rows."""
        _, reader = await self._connections()
        if self._dim is None:
            return set()
        try:
            async with reader.execute(
                f'SELECT DISTINCT file_path FROM "{self.table}" WHERE project_id = ?',
                (self.project_id,),
            ) as cursor:
                return {row[0] async for row in cursor}
        except sqlite3.Error as e:
            raise StorageError(f"Cannot list indexed files: {e}") from e

    # ── writes ──

    async def index_single_file(self, root: str | Path, relative_path: str | Path) -> None:
        """Re-index one file, fully replacing its previous rows.

        A file that no longer exists is removed from the index.

        Raises:
            IndexingFailed: The file could not be read or embedded.
            StorageError: The rows could not be written.
            ConfigurationError: The embedding backend is unusable.
        """
        rel = _normalize_rel(relative_path)
        full_path = Path(root) / rel

        if not full_path.is_file():
            removed = await self.remove_file_from_index(rel)
            logger.debug("File %s is gone; removed %d rows", rel, removed)
            return

        try:
            size = full_path.stat().st_size
        except OSError as e:
            raise IndexingFailed(rel, e) from e
        if size > self.indexing.max_file_bytes:
            removed = await self.remove_file_from_index(rel)
            logger.info(
                "Skipped %s: file > %d bytes; removed %d old rows",
                rel,
                self.indexing.max_file_bytes,
                removed,
            )
            return

        chunks = await self._index_path(full_path, rel, skip_unchanged=False)
        logger.debug("Indexed %s (%d chunks)", rel, chunks or 0)

    async def remove_file_from_index(self, relative_path: str | Path) -> int:
        """Delete every row of a file; returns the number of chunks removed."""
        rel = _normalize_rel(relative_path)
        async with self._path_lock(rel):
            return await self._replace_rows(rel, "", [], [])

    async def remove_directory_from_index(self, relative_dir: str | Path) -> int:
        """Delete the rows of every file below *relative_dir*.

        Returns the number of files removed.
        """
        prefix = _normalize_rel(relative_dir).rstrip("/") + "/"
        if prefix == "/":
            return 0
        removed = 0
        for rel in sorted(await self.indexed_paths()):
            if rel.startswith(prefix) and await self.remove_file_from_index(rel):
                removed += 1
        return removed

    async def _index_path(
        self, full_path: Path, rel: str, skip_unchanged: bool
    ) -> int | None:
        """Chunk, embed and store one file.

        Returns the number of chunks written, or None when the stored
        content hash already matches and *skip_unchanged* is set.
        """
        async with self._path_lock(rel):
            try:
                content_hash, texts = await asyncio.to_thread(
                    self._load_chunks, full_path, rel
                )
            except OSError as e:
                raise IndexingFailed(rel, e) from e

            if skip_unchanged and texts and await self._stored_hash(rel) == content_hash:
                return None

            vectors = await self._embed_chunks(rel, texts)
            await self._replace_rows(rel, content_hash, texts, vectors)
            return len(texts)

    def _load_chunks(self, full_path: Path, rel: str) -> tuple[str, list[str]]:
        data = full_path.read_bytes()
        content_hash = compute_md5(data)
        text = _decode(data)
        if not text.strip():
            return content_hash, []
        body = build_file_header(rel) + text
        chunks = chunk_text(body, self.settings.max_chars, self.settings.overlap)
        return content_hash, [c.text for c in chunks]

    async def _embed_chunks(self, rel: str, texts: list[str]) -> list[np.ndarray]:
        vectors: list[np.ndarray] = []
        for idx, text in enumerate(texts):
            try:
                vectors.append(await self.embedder.embed(text))
            except ConfigurationError:
                raise
            except EmbeddingError as e:
                logger.debug("Chunk failure %s[%d/%d]: %s", rel, idx, len(texts), e)
                raise IndexingFailed(rel, e) from e
        return vectors

    async def _replace_rows(
        self,
        rel: str,
        content_hash: str,
        texts: list[str],
        vectors: list[np.ndarray],
    ) -> int:
        """Delete the rows of *rel* and insert the new ones in one transaction.

        Returns the number of rows deleted.
        """
        if vectors:
            await self.ensure_schema(int(np.asarray(vectors[0]).shape[0]))
            for vector in vectors:
                if np.asarray(vector).shape[0] != self._dim:
                    raise StorageError(
                        f"Embedding dimension mismatch in {rel}: expected {self._dim}"
                    )
        writer, _ = await self._connections()
        if self._dim is None:
            self._dim = await table_dimension(writer, self.table)
        if self._dim is None:
            # No table yet, so nothing to delete
            return 0

        now = datetime.now(timezone.utc).isoformat()
        async with self._write_lock:
            try:
                async with writer.execute(
                    f'SELECT id FROM "{self.table}" WHERE project_id = ? AND file_path = ?',
                    (self.project_id, rel),
                ) as cursor:
                    ids = [row[0] for row in await cursor.fetchall()]
                if ids:
                    await writer.executemany(
                        f'DELETE FROM "{self.table}_vec" WHERE rowid = ?',
                        [(row_id,) for row_id in ids],
                    )
                    await writer.execute(
                        f'DELETE FROM "{self.table}" WHERE project_id = ? AND file_path = ?',
                        (self.project_id, rel),
                    )
                for idx, (text, vector) in enumerate(zip(texts, vectors)):
                    cursor = await writer.execute(
                        f'INSERT INTO "{self.table}" '
                        "(project_id, file_path, chunk_index, chunk_text, content_hash, updated_at) "
                        "VALUES (?, ?, ?, ?, ?, ?)",
                        (self.project_id, rel, idx, text, content_hash, now),
                    )
                    await writer.execute(
                        f'INSERT INTO "{self.table}_vec" (rowid, embedding) VALUES (?, ?)',
                        (cursor.lastrowid, np.asarray(vector, dtype=np.float32).tobytes()),
                    )
                await writer.commit()
            except sqlite3.Error as e:
                await writer.rollback()
                raise StorageError(f"Failed to write rows for {rel}: {e}") from e
        return len(ids)

    # ── bulk ──

    async def iter_index_project(
        self, root: str | Path
    ) -> AsyncGenerator[tuple[str, dict[str, Any]], None]:
        """Index every eligible file under *root*, yielding progress events.

        Yields:
            ("start", {"total_files": int, "project_types": list[str]})
            ("file_indexed", {"path": str, "chunks": int})
            ("file_skipped", {"path": str, "reason": str})
            ("file_error", {"path": str, "error": str})
            ("cleanup", {"removed_files": int})
            ("complete", IndexingReport.as_dict())

        Raises:
            ConfigurationError: The embedding backend is unusable; the walk
                stops at the first file that hits it.
        """
        start_time = time.time()
        root_path = Path(root).resolve()
        if not root_path.is_dir():
            raise ValueError(f"Not a directory: {root}")

        rules = ExclusionRules(root_path, self.indexing)
        type_names = [t.name for t in rules.project_types]
        if type_names:
            logger.info("Detected project types: %s", ", ".join(type_names))

        files = await asyncio.to_thread(rules.collect_files)
        report = IndexingReport()
        self.last_report = report
        yield ("start", {"total_files": len(files), "project_types": type_names})

        seen: set[str] = set()
        for full_path in files:
            rel = relative_posix(root_path, full_path)
            if rel is None:
                continue
            if rules.too_large(full_path):
                report.skipped += 1
                logger.info(
                    "Skipped %s: file > %d bytes (raise RAGWATCH_EMBED_MAX_FILE_BYTES or pre-trim)",
                    rel,
                    self.indexing.max_file_bytes,
                )
                yield ("file_skipped", {"path": rel, "reason": "too large"})
                continue

            seen.add(rel)

            try:
                chunks = await self._index_path(full_path, rel, skip_unchanged=True)
            except ConfigurationError:
                logger.error("Embedding backend unusable; indexing aborted at %s", rel)
                raise
            except (IndexingFailed, EmbeddingError, StorageError) as e:
                report.failures.append((rel, str(e)))
                logger.warning("Failed to index %s: %s", rel, e)
                yield ("file_error", {"path": rel, "error": str(e)})
                continue

            if chunks is None:
                report.file_count += 1
                report.unchanged += 1
                yield ("file_skipped", {"path": rel, "reason": "unchanged"})
            elif chunks == 0:
                report.skipped += 1
                yield ("file_skipped", {"path": rel, "reason": "empty"})
            else:
                report.file_count += 1
                report.chunk_count += chunks
                if report.file_count % 10 == 0:
                    logger.info(
                        "Indexed %d files, %d chunks -> %s",
                        report.file_count,
                        report.chunk_count,
                        self.table,
                    )
                yield ("file_indexed", {"path": rel, "chunks": chunks})

        stale = await self.indexed_paths() - seen
        for rel in sorted(stale):
            try:
                await self.remove_file_from_index(rel)
                report.removed += 1
            except StorageError as e:
                report.failures.append((rel, str(e)))
                logger.warning("Failed to remove stale file %s: %s", rel, e)
        if report.removed:
            yield ("cleanup", {"removed_files": report.removed})

        report.duration = round(time.time() - start_time, 2)
        logger.info(
            "Indexing done: files=%d chunks=%d unchanged=%d skipped=%d failed=%d -> %s",
            report.file_count,
            report.chunk_count,
            report.unchanged,
            report.skipped,
            len(report.failures),
            self.table,
        )
        yield ("complete", report.as_dict())

    async def index_project(self, root: str | Path) -> int:
        """Index every eligible file under *root*.

        Returns the number of files successfully processed; details,
        including per-file failures, are in ``last_report``.
        """
        async for _event, _data in self.iter_index_project(root):
            pass
        assert self.last_report is not None
        return self.last_report.file_count
