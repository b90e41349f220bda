"""Primary storage tier: the `qr_codes` table in SQLite.

Provides SQLiteRecordTier, compatible with
`utils.database_init.AsyncDatabaseInitializer`.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Optional, Sequence

import aiosqlite

from dal.record_tier import RecordTier
from models.qr_record import CodeStats, QRRecord
from services.errors import StorageUnavailable
from utils.database_init import AsyncDatabaseInitializer

LOGGER = logging.getLogger(__name__)

VISIBLE_CLAUSE = "is_active = 1 AND (expires_at IS NULL OR expires_at > ?)"


async def _changes(conn: aiosqlite.Connection) -> int:
    cur = await conn.execute("SELECT changes()")
    changed = await cur.fetchone()
    return int(changed[0]) if changed and changed[0] is not None else 0


class SQLiteRecordTier(RecordTier):
    """Data access for the `qr_codes` table.

    The constructor accepts an `AsyncDatabaseInitializer` (or any object
    exposing an async `connection()` context manager that yields an
    `aiosqlite.Connection`).
    """

    name = "sqlite"
    # IntegrityError and ProgrammingError are logical rejections and must
    # propagate; other DatabaseErrors are mapped in _guard.
    unavailable_errors = (sqlite3.OperationalError, OSError, ConnectionError)

    _COLUMNS = (
        "id",
        "data",
        "qr_image_url",
        "created_at",
        "expires_at",
        "access_count",
        "user_id",
        "metadata",
        "is_active",
    )
    _COLUMN_LIST = ", ".join(_COLUMNS)

    def __init__(self, db_initializer: AsyncDatabaseInitializer, timeout_seconds: float = 3.0) -> None:
        super().__init__(timeout_seconds)
        self._db = db_initializer

    async def _guard(self, operation, awaitable):
        try:
            return await super()._guard(operation, awaitable)
        except (sqlite3.IntegrityError, sqlite3.ProgrammingError):
            raise
        except sqlite3.DatabaseError as exc:
            # A corrupt or foreign file is as unusable as a missing one.
            raise StorageUnavailable(self.name, f"{operation} failed: {exc}") from exc

    async def connect(self) -> None:
        await self._guard("connect", self._db.ensure_database())

    async def _ping(self) -> None:
        async with self._db.connection() as conn:
            await conn.execute("SELECT 1")

    async def _insert(self, record: QRRecord) -> QRRecord:
        async with self._db.connection() as conn:
            await conn.execute(
                f"INSERT INTO qr_codes ({self._COLUMN_LIST}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.data,
                    record.qr_image_url,
                    record.created_at,
                    record.expires_at,
                    record.access_count,
                    record.user_id,
                    json.dumps(record.metadata or {}),
                    1 if record.is_active else 0,
                ),
            )
            await conn.commit()
        LOGGER.debug("QR code %s stored in SQLite", record.id)
        return record

    async def _find_visible(self, record_id: str, now: float) -> Optional[QRRecord]:
        async with self._db.connection() as conn:
            cur = await conn.execute(
                f"SELECT {self._COLUMN_LIST} FROM qr_codes WHERE id = ? AND {VISIBLE_CLAUSE}",
                (record_id, now),
            )
            row = await cur.fetchone()
            return self._row_to_record(row) if row else None

    async def _retire(self, record_id: str, now: float, user_id: Optional[str]) -> bool:
        sql = f"UPDATE qr_codes SET is_active = 0 WHERE id = ? AND {VISIBLE_CLAUSE}"
        params: tuple = (record_id, now)
        if user_id is not None:
            sql += " AND user_id = ?"
            params += (user_id,)

        async with self._db.connection() as conn:
            await conn.execute(sql, params)
            await conn.commit()
            return await _changes(conn) > 0

    async def _increment_access(self, record_id: str) -> bool:
        async with self._db.connection() as conn:
            await conn.execute(
                "UPDATE qr_codes SET access_count = access_count + 1 WHERE id = ?",
                (record_id,),
            )
            await conn.commit()
            return await _changes(conn) > 0

    async def _purge_expired(self, now: float) -> int:
        async with self._db.connection() as conn:
            await conn.execute(
                "DELETE FROM qr_codes WHERE expires_at IS NOT NULL AND expires_at < ?",
                (now,),
            )
            await conn.commit()
            return await _changes(conn)

    async def _aggregate_stats(self, now: float, user_id: Optional[str]) -> CodeStats:
        sql = (
            "SELECT COUNT(*), "
            "COUNT(CASE WHEN expires_at IS NULL OR expires_at > ? THEN 1 END), "
            "COALESCE(SUM(access_count), 0) "
            "FROM qr_codes WHERE is_active = 1"
        )
        params: tuple = (now,)
        if user_id is not None:
            sql += " AND user_id = ?"
            params += (user_id,)

        async with self._db.connection() as conn:
            cur = await conn.execute(sql, params)
            row = await cur.fetchone()
        total, active, accesses = row if row else (0, 0, 0)
        return CodeStats(total_codes=int(total or 0), active_codes=int(active or 0), total_accesses=int(accesses or 0))

    @staticmethod
    def _row_to_record(row: Sequence[object]) -> QRRecord:
        """Convert a DB row tuple into a QRRecord."""
        metadata = {}
        if row[7]:
            try:
                metadata = json.loads(row[7])
            except ValueError:
                metadata = {}
        return QRRecord(
            id=row[0],
            data=row[1],
            qr_image_url=row[2],
            created_at=float(row[3]),
            expires_at=float(row[4]) if row[4] is not None else None,
            access_count=int(row[5] or 0),
            user_id=row[6],
            metadata=metadata,
            is_active=bool(row[8]),
        )
