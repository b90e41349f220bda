"""Secondary storage tier: the `qr_codes` table in PostgreSQL via asyncpg.

The pool is created lazily. If PostgreSQL is down at startup the tier is
still registered and every call retries pool creation within its timeout,
so the service picks the database back up once it returns.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import asyncpg

from dal.record_tier import RecordTier
from models.qr_record import CodeStats, QRRecord
from services.errors import StorageUnavailable

LOGGER = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS qr_codes (
        id TEXT PRIMARY KEY,
        data TEXT NOT NULL,
        qr_image_url TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        expires_at TIMESTAMPTZ,
        access_count INTEGER NOT NULL DEFAULT 0,
        user_id VARCHAR(255),
        metadata JSONB DEFAULT '{}'::jsonb,
        is_active BOOLEAN NOT NULL DEFAULT true
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_qr_codes_expires_at ON qr_codes(expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_qr_codes_user_id ON qr_codes(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_qr_codes_created_at ON qr_codes(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_qr_codes_is_active ON qr_codes(is_active)",
)

VISIBLE_CLAUSE = "is_active = true AND (expires_at IS NULL OR expires_at > $2)"


def _to_datetime(ts: Optional[float]) -> Optional[datetime]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _to_timestamp(value: Optional[datetime]) -> Optional[float]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def _rows_affected(status: str) -> int:
    """Parse asyncpg's command status, e.g. 'UPDATE 1' or 'DELETE 3'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


class PostgresRecordTier(RecordTier):
    """asyncpg-backed record tier."""

    name = "postgres"
    unavailable_errors = (
        asyncpg.PostgresConnectionError,
        asyncpg.CannotConnectNowError,
        asyncpg.TooManyConnectionsError,
        asyncpg.InvalidAuthorizationSpecificationError,
        asyncpg.InvalidCatalogNameError,
        asyncpg.InterfaceError,
        OSError,
        ConnectionError,
    )

    _COLUMN_LIST = "id, data, qr_image_url, created_at, expires_at, access_count, user_id, metadata, is_active"

    def __init__(self, database_url: str, timeout_seconds: float = 3.0, max_pool_size: int = 20) -> None:
        super().__init__(timeout_seconds)
        self.database_url = database_url
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None
        self._pool_lock = asyncio.Lock()

    async def connect(self) -> None:
        await self._guard("connect", self._get_pool())

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    async def _get_pool(self) -> asyncpg.Pool:
        if self.pool is not None:
            return self.pool
        async with self._pool_lock:
            if self.pool is None:
                pool = await asyncpg.create_pool(
                    self.database_url,
                    min_size=1,
                    max_size=self.max_pool_size,
                    command_timeout=self.timeout_seconds,
                )
                if pool is None:
                    raise StorageUnavailable(self.name, "pool creation returned nothing")
                async with pool.acquire() as conn:
                    for statement in SCHEMA_STATEMENTS:
                        await conn.execute(statement)
                self.pool = pool
                LOGGER.info("PostgreSQL pool ready (max_size=%s)", self.max_pool_size)
        return self.pool

    async def _ping(self) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.fetchval("SELECT 1")

    async def _insert(self, record: QRRecord) -> QRRecord:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                f"INSERT INTO qr_codes ({self._COLUMN_LIST}) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9)",
                record.id,
                record.data,
                record.qr_image_url,
                _to_datetime(record.created_at),
                _to_datetime(record.expires_at),
                record.access_count,
                record.user_id,
                json.dumps(record.metadata or {}),
                record.is_active,
            )
        LOGGER.debug("QR code %s stored in PostgreSQL", record.id)
        return record

    async def _find_visible(self, record_id: str, now: float) -> Optional[QRRecord]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {self._COLUMN_LIST} FROM qr_codes WHERE id = $1 AND {VISIBLE_CLAUSE}",
                record_id,
                _to_datetime(now),
            )
        return self._row_to_record(row) if row else None

    async def _retire(self, record_id: str, now: float, user_id: Optional[str]) -> bool:
        sql = f"UPDATE qr_codes SET is_active = false WHERE id = $1 AND {VISIBLE_CLAUSE}"
        params: list[Any] = [record_id, _to_datetime(now)]
        if user_id is not None:
            sql += " AND user_id = $3"
            params.append(user_id)

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(sql, *params)
        return _rows_affected(status) > 0

    async def _increment_access(self, record_id: str) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                "UPDATE qr_codes SET access_count = access_count + 1 WHERE id = $1",
                record_id,
            )
        return _rows_affected(status) > 0

    async def _purge_expired(self, now: float) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                "DELETE FROM qr_codes WHERE expires_at IS NOT NULL AND expires_at < $1",
                _to_datetime(now),
            )
        return _rows_affected(status)

    async def _aggregate_stats(self, now: float, user_id: Optional[str]) -> CodeStats:
        sql = (
            "SELECT COUNT(*) AS total_codes, "
            "COUNT(CASE WHEN expires_at IS NULL OR expires_at > $1 THEN 1 END) AS active_codes, "
            "COALESCE(SUM(access_count), 0) AS total_accesses "
            "FROM qr_codes WHERE is_active = true"
        )
        params: list[Any] = [_to_datetime(now)]
        if user_id is not None:
            sql += " AND user_id = $2"
            params.append(user_id)

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(sql, *params)
        if row is None:
            return CodeStats()
        return CodeStats(
            total_codes=int(row["total_codes"] or 0),
            active_codes=int(row["active_codes"] or 0),
            total_accesses=int(row["total_accesses"] or 0),
        )

    @staticmethod
    def _row_to_record(row: Any) -> QRRecord:
        """Convert an asyncpg Record (or mapping) into a QRRecord."""
        metadata = row["metadata"]
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata)
            except ValueError:
                metadata = {}
        return QRRecord(
            id=str(row["id"]),
            data=row["data"],
            qr_image_url=row["qr_image_url"],
            created_at=_to_timestamp(row["created_at"]) or 0.0,
            expires_at=_to_timestamp(row["expires_at"]),
            access_count=int(row["access_count"] or 0),
            user_id=row["user_id"],
            metadata=dict(metadata or {}),
            is_active=bool(row["is_active"]),
        )
