"""Async access to Cursor's ``state.vscdb`` key/value stores.

Each store is a SQLite file with an ``ItemTable`` and (in newer versions) a
``cursorDiskKV`` table, both shaped ``(key TEXT UNIQUE, value BLOB)``.
Stores are opened read-only unless a caller explicitly asks for write access.
Cursor may hold a write lock while it runs; that surfaces as ``LockedError``
immediately instead of waiting.
"""

import re
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

from .errors import CorruptedError, CursorHistoryError, LockedError, NotFoundError

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_table(table: str) -> str:
    if not _TABLE_NAME.match(table):
        raise ValueError(f"Invalid table name: {table!r}")
    return table


def _escape_like(prefix: str) -> str:
    return prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _decode(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _is_locked(exc: sqlite3.Error) -> bool:
    text = str(exc).lower()
    return "locked" in text or "busy" in text


def _store_error(exc: sqlite3.DatabaseError, path: Path) -> CursorHistoryError:
    """Map a driver error onto the error taxonomy."""
    if isinstance(exc, sqlite3.OperationalError) and _is_locked(exc):
        return LockedError(path)
    return CorruptedError(f"Cannot read database {path}: {exc}", path=path)


class Store:
    """An open key/value store. Use ``open_store`` rather than constructing directly."""

    def __init__(self, conn: aiosqlite.Connection, path: Path, readonly: bool):
        self._conn = conn
        self.path = path
        self.readonly = readonly

    @classmethod
    async def open_read_only(cls, path: Path) -> "Store":
        return await cls._open(Path(path), readonly=True)

    @classmethod
    async def open_read_write(cls, path: Path) -> "Store":
        return await cls._open(Path(path), readonly=False)

    @classmethod
    async def _open(cls, path: Path, readonly: bool) -> "Store":
        if not path.is_file():
            raise NotFoundError(f"Database not found: {path}", path=path)
        mode = "ro" if readonly else "rw"
        uri = f"{path.resolve().as_uri()}?mode={mode}"
        try:
            conn = await aiosqlite.connect(uri, uri=True, timeout=0)
        except sqlite3.DatabaseError as e:
            raise _store_error(e, path) from e
        return cls(conn, path, readonly)

    async def _fetch(self, sql: str, params: tuple = ()) -> list:
        try:
            async with self._conn.execute(sql, params) as cur:
                return list(await cur.fetchall())
        except sqlite3.DatabaseError as e:
            raise _store_error(e, self.path) from e

    async def has_table(self, table: str) -> bool:
        rows = await self._fetch(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
        )
        return bool(rows)

    async def get(self, table: str, key: str) -> str | None:
        """Return the value stored under ``key``, or None."""
        rows = await self._fetch(
            f"SELECT value FROM {_check_table(table)} WHERE key = ?", (key,)
        )
        return _decode(rows[0][0]) if rows else None

    async def query_prefix(self, table: str, prefix: str) -> list[tuple[str, str]]:
        """Return ``(key, value)`` pairs whose key starts with ``prefix``, in storage order."""
        rows = await self._fetch(
            f"SELECT key, value FROM {_check_table(table)} "
            "WHERE key LIKE ? ESCAPE '\\' AND value IS NOT NULL ORDER BY rowid",
            (_escape_like(prefix) + "%",),
        )
        return [(key, _decode(value)) for key, value in rows]

    async def count_prefix(self, table: str, prefix: str) -> int:
        rows = await self._fetch(
            f"SELECT COUNT(*) FROM {_check_table(table)} WHERE key LIKE ? ESCAPE '\\'",
            (_escape_like(prefix) + "%",),
        )
        return int(rows[0][0]) if rows else 0

    async def put(self, table: str, key: str, value: str) -> None:
        if self.readonly:
            raise CursorHistoryError(f"Store opened read-only: {self.path}")
        try:
            await self._conn.execute(
                f"INSERT OR REPLACE INTO {_check_table(table)} (key, value) VALUES (?, ?)",
                (key, value),
            )
            await self._conn.commit()
        except sqlite3.DatabaseError as e:
            raise _store_error(e, self.path) from e

    async def close(self) -> None:
        await self._conn.close()


@asynccontextmanager
async def open_store(path: Path, readonly: bool = True):
    """Open a store for the duration of a ``async with`` block."""
    if readonly:
        store = await Store.open_read_only(path)
    else:
        store = await Store.open_read_write(path)
    try:
        yield store
    finally:
        await store.close()
