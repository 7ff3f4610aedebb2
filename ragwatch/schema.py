"""Per-project table lifecycle: naming, creation and removal.

Each project gets two tables in the index database:

    <base>__<slug>       chunk rows (path, chunk index, text, hash, timestamp)
    <base>__<slug>_vec   sqlite-vec ``vec0`` table holding the embeddings,
                         keyed by the row table's id

The embedding dimension and distance metric of every project table are
recorded in ``ragwatch_schema`` the first time the table is created.
"""

from __future__ import annotations

import re
import sqlite3
from pathlib import Path

import aiosqlite
import sqlite_vec

from ragwatch import config
from ragwatch.errors import StorageError

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_REGISTRY_SCHEMA = """
CREATE TABLE IF NOT EXISTS ragwatch_schema (
    table_name TEXT PRIMARY KEY,
    dim INTEGER NOT NULL,
    metric TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""

_TABLE_SCHEMA = """
CREATE TABLE IF NOT EXISTS "{table}" (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL,
    file_path TEXT NOT NULL,
    chunk_index INTEGER NOT NULL,
    chunk_text TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    updated_at TIMESTAMP NOT NULL,
    UNIQUE (project_id, file_path, chunk_index)
);

CREATE INDEX IF NOT EXISTS "{table}_file_idx" ON "{table}"(project_id, file_path);

CREATE VIRTUAL TABLE IF NOT EXISTS "{table}_vec" USING vec0(
    embedding float[{dim}] distance_metric={metric}
);
"""


def slugify(name: str) -> str:
    """Lower-case *name* and collapse every run of other characters to '_'."""
    return re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")


def project_table_name(base_table: str, project_name: str) -> str:
    """Deterministic table name for a project.

    Raises:
        ValueError: If the base name is not a plain identifier or the
            project name has no usable characters.
    """
    if not _IDENTIFIER.match(base_table):
        raise ValueError(f"Invalid base table name: {base_table!r}")
    slug = slugify(project_name)
    if not slug:
        raise ValueError(f"Project name {project_name!r} yields an empty table suffix")
    return f"{base_table}__{slug}"


async def open_connection(db_path: str | Path) -> aiosqlite.Connection:
    """Open the index database with sqlite-vec loaded and WAL enabled."""
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        conn = await aiosqlite.connect(str(path))
    except sqlite3.Error as e:
        raise StorageError(f"Cannot open index database {path}: {e}") from e

    try:
        await conn.enable_load_extension(True)
        await conn.load_extension(sqlite_vec.loadable_path())
        await conn.enable_load_extension(False)
        await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA busy_timeout=5000")
        await conn.execute("PRAGMA foreign_keys=ON")
        await conn.executescript(_REGISTRY_SCHEMA)
        await conn.commit()
    except (sqlite3.Error, AttributeError) as e:
        # AttributeError: interpreter built without extension loading
        await conn.close()
        raise StorageError(f"Cannot initialise index database {path}: {e}") from e
    return conn


async def table_dimension(conn: aiosqlite.Connection, table: str) -> int | None:
    """Return the recorded embedding dimension of *table*, if it exists."""
    try:
        async with conn.execute(
            "SELECT dim FROM ragwatch_schema WHERE table_name = ?", (table,)
        ) as cursor:
            row = await cursor.fetchone()
    except sqlite3.Error as e:
        raise StorageError(f"Cannot read schema registry: {e}") from e
    return int(row[0]) if row else None


async def create_project_tables(
    conn: aiosqlite.Connection, table: str, dim: int, metric: str = "cosine"
) -> int:
    """Create the row and vector tables of a project if missing.

    Returns the table's dimension.  Raises ``StorageError`` if the table
    already exists with a different dimension.
    """
    if dim < 1:
        raise StorageError(f"Invalid embedding dimension {dim} for {table}")
    if metric not in config.DISTANCE_METRICS:
        raise StorageError(f"Unsupported distance metric: {metric}")

    existing = await table_dimension(conn, table)
    if existing is not None:
        if existing != dim:
            raise StorageError(
                f"Embedding dimension mismatch for {table}: table has {existing}, "
                f"got {dim}. Drop the project index to switch embedding models."
            )
        return existing

    try:
        await conn.executescript(_TABLE_SCHEMA.format(table=table, dim=dim, metric=metric))
        await conn.execute(
            "INSERT INTO ragwatch_schema (table_name, dim, metric) VALUES (?, ?, ?)",
            (table, dim, metric),
        )
        await conn.commit()
    except sqlite3.Error as e:
        raise StorageError(f"Cannot create tables for {table}: {e}") from e
    return dim


async def drop_tables(conn: aiosqlite.Connection, table: str) -> None:
    """Drop both tables of *table* and forget its registry entry."""
    try:
        await conn.execute(f'DROP TABLE IF EXISTS "{table}_vec"')
        await conn.execute(f'DROP TABLE IF EXISTS "{table}"')
        await conn.execute("DELETE FROM ragwatch_schema WHERE table_name = ?", (table,))
        await conn.commit()
    except sqlite3.Error as e:
        raise StorageError(f"Cannot drop tables for {table}: {e}") from e


async def drop_project_table(
    base_table: str, project_name: str, db_path: str | Path | None = None
) -> None:
    """Remove a project's index; a missing table is not an error."""
    table = project_table_name(base_table, project_name)
    conn = await open_connection(db_path or config.get_db_path())
    try:
        await drop_tables(conn, table)
    finally:
        await conn.close()


async def list_project_tables(conn: aiosqlite.Connection, base_table: str) -> list[str]:
    """Return every registered project table derived from *base_table*."""
    prefix = f"{base_table}__"
    try:
        async with conn.execute(
            "SELECT table_name FROM ragwatch_schema ORDER BY table_name"
        ) as cursor:
            names = [row[0] async for row in cursor]
    except sqlite3.Error as e:
        raise StorageError(f"Cannot read schema registry: {e}") from e
    return [name for name in names if name.startswith(prefix)]
