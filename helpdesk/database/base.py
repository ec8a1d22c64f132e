from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiosqlite
import asyncpg

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class DatabaseDsn:
    driver: str
    value: str


def parse_database_dsn(url: str) -> DatabaseDsn:
    if url.startswith("sqlite:///"):
        return DatabaseDsn(driver="sqlite", value=url.replace("sqlite:///", "", 1))
    if url.startswith("postgresql://") or url.startswith("postgres://"):
        return DatabaseDsn(driver="postgresql", value=url)
    raise ValueError("Unsupported database URL. Use sqlite:/// or postgresql://")


def _qmark_to_dollar(query: str) -> str:
    idx = 1
    out: list[str] = []
    for char in query:
        if char == "?":
            out.append(f"${idx}")
            idx += 1
        else:
            out.append(char)
    return "".join(out)


def _rowcount_from_status(status: str) -> int:
    # asyncpg returns command tags such as "UPDATE 1" or "INSERT 0 1".
    tail = status.rsplit(" ", 1)[-1] if status else ""
    return int(tail) if tail.isdigit() else 0


class Transaction:
    """Statements bound to one connection inside BEGIN/COMMIT."""

    def __init__(self, driver: str, conn: Any) -> None:
        self.driver = driver
        self._conn = conn

    async def execute(self, query: str, params: Sequence[Any] | None = None) -> int:
        params = params or []
        if self.driver == "sqlite":
            cursor = await self._conn.execute(query, tuple(params))
            return cursor.rowcount
        status = await self._conn.execute(_qmark_to_dollar(query), *params)
        return _rowcount_from_status(status)

    async def fetchone(self, query: str, params: Sequence[Any] | None = None) -> dict[str, Any] | None:
        params = params or []
        if self.driver == "sqlite":
            cursor = await self._conn.execute(query, tuple(params))
            row = await cursor.fetchone()
        else:
            row = await self._conn.fetchrow(_qmark_to_dollar(query), *params)
        if row is None:
            return None
        return dict(row)

    async def fetchall(self, query: str, params: Sequence[Any] | None = None) -> list[dict[str, Any]]:
        params = params or []
        if self.driver == "sqlite":
            cursor = await self._conn.execute(query, tuple(params))
            rows = await cursor.fetchall()
        else:
            rows = await self._conn.fetch(_qmark_to_dollar(query), *params)
        return [dict(row) for row in rows]


class Database:
    """Async facade over SQLite (aiosqlite) or PostgreSQL (asyncpg).

    Every query uses ``?`` placeholders. Inside ``transaction()`` all calls
    made from the same task share one connection and commit together;
    outside it each call commits on its own.
    """

    def __init__(self, url: str, timeout_seconds: int = 30, pool_min_size: int = 2, pool_max_size: int = 10) -> None:
        self._dsn = parse_database_dsn(url)
        self._timeout_seconds = timeout_seconds
        self._pool_min_size = pool_min_size
        self._pool_max_size = pool_max_size
        self._sqlite: aiosqlite.Connection | None = None
        self._pg_pool: asyncpg.Pool | None = None
        # aiosqlite has a single connection; this serializes its users.
        self._sqlite_lock = asyncio.Lock()
        self._active_tx: ContextVar[Transaction | None] = ContextVar(f"active_tx_{id(self)}", default=None)

    @property
    def driver(self) -> str:
        return self._dsn.driver

    @property
    def in_transaction(self) -> bool:
        return self._active_tx.get() is not None

    async def connect(self) -> None:
        if self.driver == "sqlite":
            sqlite_path = Path(self._dsn.value)
            sqlite_path.parent.mkdir(parents=True, exist_ok=True)
            self._sqlite = await aiosqlite.connect(sqlite_path, timeout=self._timeout_seconds)
            self._sqlite.row_factory = aiosqlite.Row
            for pragma in ("journal_mode = WAL", "foreign_keys = ON", "busy_timeout = 5000"):
                await self._sqlite.execute(f"PRAGMA {pragma};")
            await self._sqlite.commit()
            LOGGER.info("Database ready (sqlite): %s", sqlite_path)
            return
        self._pg_pool = await asyncpg.create_pool(
            dsn=self._dsn.value,
            min_size=self._pool_min_size,
            max_size=self._pool_max_size,
            timeout=self._timeout_seconds,
        )
        LOGGER.info("Database ready (postgresql), pool %s-%s", self._pool_min_size, self._pool_max_size)

    async def close(self) -> None:
        if self._sqlite is not None:
            await self._sqlite.close()
            self._sqlite = None
        if self._pg_pool is not None:
            await self._pg_pool.close()
            self._pg_pool = None

    @asynccontextmanager
    async def _statement(self) -> AsyncIterator[Transaction]:
        """Yield the task's open transaction, or a one-shot handle that commits on exit."""
        current = self._active_tx.get()
        if current is not None:
            yield current
            return

        if self.driver == "sqlite":
            assert self._sqlite is not None
            async with self._sqlite_lock:
                try:
                    yield Transaction(self.driver, self._sqlite)
                except BaseException:
                    if self._sqlite.in_transaction:
                        await self._sqlite.rollback()
                    raise
                if self._sqlite.in_transaction:
                    await self._sqlite.commit()
            return

        assert self._pg_pool is not None
        async with self._pg_pool.acquire() as conn:
            yield Transaction(self.driver, conn)

    async def execute(self, query: str, params: Sequence[Any] | None = None) -> int:
        """Run one statement and return the number of affected rows."""
        async with self._statement() as tx:
            return await tx.execute(query, params)

    async def fetchone(self, query: str, params: Sequence[Any] | None = None) -> dict[str, Any] | None:
        async with self._statement() as tx:
            return await tx.fetchone(query, params)

    async def fetchall(self, query: str, params: Sequence[Any] | None = None) -> list[dict[str, Any]]:
        async with self._statement() as tx:
            return await tx.fetchall(query, params)

    async def executescript(self, sql_script: str) -> None:
        if self.in_transaction:
            raise RuntimeError("executescript cannot run inside a transaction")
        if self.driver == "sqlite":
            assert self._sqlite is not None
            async with self._sqlite_lock:
                await self._sqlite.executescript(sql_script)
                await self._sqlite.commit()
            return

        assert self._pg_pool is not None
        async with self._pg_pool.acquire() as conn:
            await conn.execute(sql_script)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """Open a transaction for the current task; nested calls join the outer one."""
        current = self._active_tx.get()
        if current is not None:
            yield current
            return

        if self.driver == "sqlite":
            assert self._sqlite is not None
            async with self._sqlite_lock:
                # IMMEDIATE takes the write lock up front so compare-and-set reads stay valid.
                await self._sqlite.execute("BEGIN IMMEDIATE")
                tx = Transaction(self.driver, self._sqlite)
                token = self._active_tx.set(tx)
                try:
                    yield tx
                except BaseException:
                    await self._sqlite.rollback()
                    raise
                else:
                    await self._sqlite.commit()
                finally:
                    self._active_tx.reset(token)
            return

        assert self._pg_pool is not None
        async with self._pg_pool.acquire() as conn:
            async with conn.transaction():
                tx = Transaction(self.driver, conn)
                token = self._active_tx.set(tx)
                try:
                    yield tx
                finally:
                    self._active_tx.reset(token)
