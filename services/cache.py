"""Redis-backed cache for QR records.

The cache is an accelerator only. Every method swallows connectivity
errors, logs them, and degrades to a miss or a no-op.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from models.qr_record import QRRecord

LOGGER = logging.getLogger(__name__)

KEY_PREFIX = "qr:"
_FAILURES = (RedisError, OSError, asyncio.TimeoutError, ValueError)


def cache_key(record_id: str) -> str:
    return f"{KEY_PREFIX}{record_id}"


class RecordCache:
    """Get/put/delete QR records in Redis with per-key expiry.

    Args:
        client: An object with the async `get`, `set`, `delete` and `ping`
            methods of `redis.asyncio.Redis`. None disables the cache.
        timeout_seconds: Upper bound for any single cache call.
    """

    def __init__(self, client: Any = None, timeout_seconds: float = 3.0) -> None:
        self.client = client
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_url(cls, url: Optional[str], timeout_seconds: float = 3.0) -> "RecordCache":
        """Build a cache for `url`; a None url yields a permanently disabled cache."""
        if not url:
            return cls(None, timeout_seconds)
        client = aioredis.from_url(
            url,
            socket_connect_timeout=timeout_seconds,
            socket_timeout=timeout_seconds,
            decode_responses=True,
            encoding="utf-8",
        )
        return cls(client, timeout_seconds)

    @property
    def enabled(self) -> bool:
        return self.client is not None

    async def connect(self) -> bool:
        """Ping Redis once; the cache stays usable afterwards either way."""
        available = await self.ping()
        if available:
            LOGGER.info("Redis cache connected")
        elif self.enabled:
            LOGGER.warning("Redis connection failed, continuing without a working cache")
        return available

    async def close(self) -> None:
        if self.client is None:
            return
        try:
            await self.client.aclose()
        except _FAILURES as exc:
            LOGGER.debug("Ignoring error while closing Redis client: %s", exc)

    async def ping(self) -> bool:
        if self.client is None:
            return False
        try:
            return bool(await asyncio.wait_for(self.client.ping(), timeout=self.timeout_seconds))
        except _FAILURES as exc:
            LOGGER.warning("Redis ping failed: %s", exc)
            return False

    async def put(self, record: QRRecord, ttl_seconds: int) -> bool:
        """Store `record` for `ttl_seconds`. Returns False if not stored."""
        if self.client is None or ttl_seconds <= 0:
            return False
        payload = json.dumps(record.to_dict())
        try:
            await asyncio.wait_for(
                self.client.set(cache_key(record.id), payload, ex=int(ttl_seconds)),
                timeout=self.timeout_seconds,
            )
        except _FAILURES as exc:
            LOGGER.warning("Failed to cache QR code %s: %s", record.id, exc)
            return False
        LOGGER.debug("QR code %s cached for %ss", record.id, ttl_seconds)
        return True

    async def get(self, record_id: str) -> Optional[QRRecord]:
        """Return the cached record, or None on a miss or any failure."""
        if self.client is None:
            return None
        try:
            raw = await asyncio.wait_for(self.client.get(cache_key(record_id)), timeout=self.timeout_seconds)
        except _FAILURES as exc:
            LOGGER.warning("Cache retrieval failed for QR %s: %s", record_id, exc)
            return None
        if raw is None:
            return None
        try:
            return QRRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            LOGGER.warning("Discarding unreadable cache entry for QR %s: %s", record_id, exc)
            return None

    async def delete(self, record_id: str) -> bool:
        if self.client is None:
            return False
        try:
            await asyncio.wait_for(self.client.delete(cache_key(record_id)), timeout=self.timeout_seconds)
        except _FAILURES as exc:
            LOGGER.warning("Failed to delete QR %s from cache: %s", record_id, exc)
            return False
        return True
