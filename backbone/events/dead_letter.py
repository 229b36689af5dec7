"""Dead-letter queue: SQLite storage for failed (event, handler) attempts and the replay workflow."""

from __future__ import annotations

import asyncio
import json
import logging
import time
import traceback
import uuid
from contextlib import asynccontextmanager
from dataclasses import replace
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from backbone.errors import (
    BackboneError,
    HandlerUnavailableError,
    NotFoundError,
    PermanentHandlerError,
    StoreUnavailableError,
)
from backbone.events.models import (
    DeadLetterEntry,
    DeadLetterFilter,
    DeadLetterRecord,
    DeadLetterStatus,
    RetryAllResult,
    RetryDetail,
)
from backbone.events.retry import invoke_with_timeout
from backbone.events.subscriptions import Subscriptions

logger = logging.getLogger(__name__)

_TABLE = "event_dead_letter_queue"

_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {_TABLE} (
    id              TEXT    PRIMARY KEY,
    event_id        TEXT    NOT NULL,
    event_name      TEXT    NOT NULL,
    event_data      TEXT    NOT NULL,
    handler_id      TEXT    NOT NULL,
    error_message   TEXT    NOT NULL,
    error_stack     TEXT,
    retry_count     INTEGER NOT NULL DEFAULT 0,
    last_retry_at   REAL,
    created_at      REAL    NOT NULL,
    status          TEXT    NOT NULL DEFAULT 'pending',
    correlation_id  TEXT,
    source_id       TEXT
);

CREATE INDEX IF NOT EXISTS idx_dlq_event_name ON {_TABLE}(event_name);
CREATE INDEX IF NOT EXISTS idx_dlq_status ON {_TABLE}(status);
CREATE INDEX IF NOT EXISTS idx_dlq_created_at ON {_TABLE}(created_at);
CREATE UNIQUE INDEX IF NOT EXISTS idx_dlq_pending_attempt
    ON {_TABLE}(event_id, handler_id) WHERE status = 'pending';
"""

_COLUMNS = (
    "id, event_id, event_name, event_data, handler_id, error_message, error_stack, "
    "retry_count, last_retry_at, created_at, status, correlation_id, source_id"
)


def _where(flt: DeadLetterFilter | None) -> tuple[str, list]:
    """Build a WHERE clause and params from a filter. Empty string when no filter applies."""
    if flt is None:
        return "", []
    clauses: list[str] = []
    params: list = []
    if flt.event_name:
        clauses.append("event_name = ?")
        params.append(flt.event_name)
    if flt.status:
        clauses.append("status = ?")
        params.append(DeadLetterStatus(flt.status).value)
    if flt.from_date is not None:
        clauses.append("created_at >= ?")
        params.append(flt.from_date)
    if flt.to_date is not None:
        clauses.append("created_at <= ?")
        params.append(flt.to_date)
    if not clauses:
        return "", []
    return "WHERE " + " AND ".join(clauses), params


class DeadLetterStore:
    """SQLite-backed dead-letter table. One connection per instance."""

    def __init__(self, db_path: Path, busy_timeout: int = 5000) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self._conn: aiosqlite.Connection | None = None
        self._conn_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    @property
    def db_path(self) -> Path:
        return self._db_path

    async def _ensure_conn(self) -> aiosqlite.Connection:
        async with self._conn_lock:
            if self._conn is None:
                self._db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = await aiosqlite.connect(str(self._db_path))
                await conn.execute("PRAGMA journal_mode=WAL")
                await conn.execute("PRAGMA synchronous=NORMAL")
                await conn.execute(f"PRAGMA busy_timeout={self._busy_timeout}")
                await conn.executescript(_SCHEMA)
                await conn.commit()
                self._conn = conn
            return self._conn

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield the connection; database failures surface as StoreUnavailableError."""
        try:
            conn = await self._ensure_conn()
            yield conn
        except (aiosqlite.Error, OSError) as e:
            raise StoreUnavailableError(f"Dead-letter store unavailable: {e}") from e

    async def open(self) -> None:
        async with self._connection():
            pass

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def upsert_pending(self, record: DeadLetterRecord) -> tuple[str, bool]:
        """Insert a pending row, or bump retry_count of the existing pending row for
        (event_id, handler_id). Returns (entry id, created)."""
        now = time.time()
        async with self._write_lock, self._connection() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = await conn.execute(
                    f"SELECT id FROM {_TABLE} "
                    "WHERE event_id = ? AND handler_id = ? AND status = 'pending'",
                    (record.event_id, record.handler_id),
                )
                row = await cursor.fetchone()
                if row:
                    entry_id, created = row[0], False
                    await conn.execute(
                        f"""
                        UPDATE {_TABLE}
                        SET retry_count = retry_count + 1, last_retry_at = ?,
                            error_message = ?, error_stack = ?
                        WHERE id = ?
                        """,
                        (now, record.error_message, record.error_stack, entry_id),
                    )
                else:
                    entry_id, created = str(uuid.uuid4()), True
                    await conn.execute(
                        f"""
                        INSERT INTO {_TABLE} (id, event_id, event_name, event_data, handler_id,
                            error_message, error_stack, retry_count, created_at, status,
                            correlation_id, source_id)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?)
                        """,
                        (
                            entry_id,
                            record.event_id,
                            record.event_name,
                            json.dumps(record.event_data, ensure_ascii=False, default=str),
                            record.handler_id,
                            record.error_message,
                            record.error_stack,
                            record.retry_count,
                            now,
                            record.correlation_id,
                            record.source_id,
                        ),
                    )
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
        return entry_id, created

    async def get(self, entry_id: str) -> DeadLetterEntry | None:
        async with self._connection() as conn:
            cursor = await conn.execute(
                f"SELECT {_COLUMNS} FROM {_TABLE} WHERE id = ?", (entry_id,)
            )
            row = await cursor.fetchone()
        return DeadLetterEntry.from_row(row) if row else None

    async def list(
        self, flt: DeadLetterFilter | None = None, limit: int = 50, offset: int = 0
    ) -> list[DeadLetterEntry]:
        """Entries matching flt, newest first."""
        where, params = _where(flt)
        async with self._connection() as conn:
            cursor = await conn.execute(
                f"SELECT {_COLUMNS} FROM {_TABLE} {where} "
                "ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                [*params, limit, offset],
            )
            rows = await cursor.fetchall()
        return [DeadLetterEntry.from_row(row) for row in rows]

    async def count(self, flt: DeadLetterFilter | None = None) -> int:
        where, params = _where(flt)
        async with self._connection() as conn:
            cursor = await conn.execute(f"SELECT COUNT(*) FROM {_TABLE} {where}", params)
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def record_retry_failure(
        self,
        entry_id: str,
        status: DeadLetterStatus,
        error_message: str,
        error_stack: str | None,
    ) -> None:
        async with self._write_lock, self._connection() as conn:
            await conn.execute(
                f"""
                UPDATE {_TABLE}
                SET retry_count = retry_count + 1, last_retry_at = ?, status = ?,
                    error_message = ?, error_stack = ?
                WHERE id = ?
                """,
                (time.time(), status.value, error_message, error_stack, entry_id),
            )
            await conn.commit()

    async def set_status(
        self, entry_id: str, status: DeadLetterStatus, last_retry_at: float | None = None
    ) -> bool:
        async with self._write_lock, self._connection() as conn:
            if last_retry_at is None:
                cursor = await conn.execute(
                    f"UPDATE {_TABLE} SET status = ? WHERE id = ?", (status.value, entry_id)
                )
            else:
                cursor = await conn.execute(
                    f"UPDATE {_TABLE} SET status = ?, last_retry_at = ? WHERE id = ?",
                    (status.value, last_retry_at, entry_id),
                )
            await conn.commit()
            return (cursor.rowcount or 0) > 0

    async def delete(self, entry_id: str) -> bool:
        async with self._write_lock, self._connection() as conn:
            cursor = await conn.execute(f"DELETE FROM {_TABLE} WHERE id = ?", (entry_id,))
            await conn.commit()
            return (cursor.rowcount or 0) > 0


def _format_stack(error: BaseException) -> str:
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


class DeadLetterQueueService:
    """Durable record of failed handler attempts and the operator workflow around them.

    Replay looks handlers up in the same Subscriptions the bus dispatches from, so a
    handler removed from the bus can no longer be retried (HandlerUnavailableError).
    """

    def __init__(
        self,
        store: DeadLetterStore,
        subscriptions: Subscriptions,
        handler_timeout: float = 30.0,
        max_retry_count: int = 10,
    ) -> None:
        self._store = store
        self._subscriptions = subscriptions
        self._handler_timeout = handler_timeout
        self._max_retry_count = max_retry_count

    async def open(self) -> None:
        await self._store.open()

    async def close(self) -> None:
        await self._store.close()

    async def store(self, record: DeadLetterRecord) -> DeadLetterEntry:
        """Record a failed attempt. A second failure of the same pending attempt bumps
        retry_count instead of adding a row."""
        entry_id, created = await self._store.upsert_pending(record)
        if created:
            logger.info(
                "DLQ: stored %s for handler %s (event %s, retry_count=%d)",
                record.event_name,
                record.handler_id,
                record.event_id,
                record.retry_count,
            )
        else:
            logger.info(
                "DLQ: repeated failure of %s for handler %s (event %s)",
                record.event_name,
                record.handler_id,
                record.event_id,
            )
        return await self.get(entry_id)

    async def get(self, entry_id: str) -> DeadLetterEntry:
        entry = await self._store.get(entry_id)
        if entry is None:
            raise NotFoundError(entry_id)
        return entry

    async def list(
        self, flt: DeadLetterFilter | None = None, limit: int = 50, offset: int = 0
    ) -> list[DeadLetterEntry]:
        return await self._store.list(flt, limit=limit, offset=offset)

    async def count(self, flt: DeadLetterFilter | None = None) -> int:
        return await self._store.count(flt)

    async def retry(self, entry_id: str) -> DeadLetterEntry:
        """Re-invoke the handler that failed, with the stored payload.

        Success resolves the entry. Failure bumps retry_count and leaves it pending until
        the ceiling, then marks it exhausted. Returns the updated entry.
        """
        entry = await self.get(entry_id)
        if entry.status is DeadLetterStatus.RESOLVED:
            logger.info("DLQ: entry %s already resolved, nothing to retry", entry_id)
            return entry

        handler = self._subscriptions.get(entry.event_name, entry.handler_id)
        if handler is None:
            raise HandlerUnavailableError(entry.event_name, entry.handler_id)

        logger.info(
            "DLQ: retrying %s for handler %s (entry %s, retry_count=%d)",
            entry.event_name,
            entry.handler_id,
            entry_id,
            entry.retry_count,
        )
        try:
            await invoke_with_timeout(handler, entry.to_envelope(), self._handler_timeout)
        except PermanentHandlerError as e:
            await self._store.record_retry_failure(
                entry_id, DeadLetterStatus.EXHAUSTED, str(e) or type(e).__name__, _format_stack(e)
            )
            logger.error("DLQ: entry %s rejected as poison on retry: %s", entry_id, e)
            return await self.get(entry_id)
        except Exception as e:
            retry_count = entry.retry_count + 1
            status = entry.status
            if retry_count >= self._max_retry_count:
                status = DeadLetterStatus.EXHAUSTED
            await self._store.record_retry_failure(
                entry_id, status, str(e) or type(e).__name__, _format_stack(e)
            )
            logger.warning(
                "DLQ: retry of entry %s failed (retry_count=%d, status=%s): %s",
                entry_id,
                retry_count,
                status.value,
                e,
            )
            return await self.get(entry_id)

        await self._store.set_status(entry_id, DeadLetterStatus.RESOLVED, time.time())
        logger.info("DLQ: entry %s resolved by retry", entry_id)
        return await self.get(entry_id)

    async def _pending_ids(self, flt: DeadLetterFilter, page_size: int = 100) -> list[tuple[str, str]]:
        ids: list[tuple[str, str]] = []
        offset = 0
        while True:
            page = await self._store.list(flt, limit=page_size, offset=offset)
            ids.extend((e.id, e.event_name) for e in page)
            if len(page) < page_size:
                return ids
            offset += page_size

    async def retry_all(self, flt: DeadLetterFilter | None = None) -> RetryAllResult:
        """Retry every pending entry matching flt."""
        flt = replace(flt or DeadLetterFilter(), status=DeadLetterStatus.PENDING)
        result = RetryAllResult()
        for entry_id, event_name in await self._pending_ids(flt):
            result.attempted += 1
            try:
                entry = await self.retry(entry_id)
            except BackboneError as e:
                result.failed += 1
                result.details.append(
                    RetryDetail(id=entry_id, event_name=event_name, success=False, error=str(e))
                )
                continue
            success = entry.status is DeadLetterStatus.RESOLVED
            if success:
                result.succeeded += 1
            else:
                result.failed += 1
            result.details.append(
                RetryDetail(
                    id=entry_id,
                    event_name=event_name,
                    success=success,
                    error=None if success else entry.error_message,
                )
            )
        logger.info(
            "DLQ: retry_all attempted=%d succeeded=%d failed=%d",
            result.attempted,
            result.succeeded,
            result.failed,
        )
        return result

    async def resolve(self, entry_id: str) -> DeadLetterEntry:
        """Mark resolved without re-invoking the handler."""
        if not await self._store.set_status(entry_id, DeadLetterStatus.RESOLVED):
            raise NotFoundError(entry_id)
        logger.info("DLQ: resolved entry %s", entry_id)
        return await self.get(entry_id)

    async def remove(self, entry_id: str) -> None:
        if not await self._store.delete(entry_id):
            raise NotFoundError(entry_id)
        logger.info("DLQ: deleted entry %s", entry_id)
