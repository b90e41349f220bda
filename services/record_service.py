"""Record service: generate, retrieve, delete, clean up and count QR codes.

The service owns no storage. It walks an ordered list of tiers
(SQLite -> PostgreSQL -> memory) with Redis in front as a cache-aside
accelerator. Connectivity failures on a tier only move the loop on to the
next tier; logical failures (validation, not found, render) reach the caller.

Example:
    service = RecordService(
        durable_tiers=[sqlite_tier, postgres_tier],
        memory_tier=MemoryRecordTier(),
        cache=RecordCache.from_url(settings.redis_url),
        scan_log=ScanLog(db_initializer),
        renderer=QRRenderer(settings.render_defaults),
        settings=settings,
    )
    record = await service.generate("https://example.com", user_id="alice")
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Union

from dal.memory_tier import MemoryRecordTier
from dal.record_tier import RecordTier, TierResult
from dal.scan_log import ScanLog
from models.qr_record import CodeStats, QRRecord, ScanInfo
from models.render_options import RenderOptions
from services.cache import RecordCache
from services.errors import DegradedPersistence, RecordNotFound
from services.qr_renderer import QRRenderer
from utils.payload_validation import (
    validate_expiry_hours,
    validate_metadata,
    validate_payload,
    validate_render_options,
    validate_user_id,
)
from utils.settings import Settings

LOGGER = logging.getLogger(__name__)


class RecordService:
    """Coordinate the cache, the durable tiers, the memory tier and the scan log.

    Args:
        durable_tiers: Durable tiers in priority order (primary first).
        memory_tier: Process-local last-resort tier.
        cache: Redis cache wrapper (may be disabled).
        scan_log: Scan history on the primary database, or None.
        renderer: QR image renderer.
        settings: Runtime configuration.
        clock: Returns the current Unix time; injectable for tests.
    """

    def __init__(
        self,
        durable_tiers: Sequence[RecordTier],
        memory_tier: MemoryRecordTier,
        cache: RecordCache,
        scan_log: Optional[ScanLog],
        renderer: QRRenderer,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.durable_tiers: List[RecordTier] = list(durable_tiers)
        self.memory_tier = memory_tier
        self.cache = cache
        self.scan_log = scan_log
        self.renderer = renderer
        self.settings = settings
        self.clock = clock
        self._background: Set[asyncio.Task] = set()

    @property
    def tiers(self) -> List[RecordTier]:
        """Every record tier in lookup order."""
        return [*self.durable_tiers, self.memory_tier]

    # ------------------------------------------------------------------ generate

    async def generate(
        self,
        data: str,
        *,
        user_id: Optional[str] = None,
        expiry_hours: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
        options: Union[RenderOptions, Dict[str, Any], None] = None,
    ) -> QRRecord:
        """Render and persist a new QR code.

        Raises:
            ValidationError: If any input is out of range.
            RenderError: If the image could not be rendered (nothing is stored).
            DegradedPersistence: If no durable tier accepted the write and
                memory-only persistence is disabled.
        """
        validate_payload(data, self.settings.max_data_length)
        validate_user_id(user_id)
        hours = validate_expiry_hours(expiry_hours)
        metadata = validate_metadata(metadata)
        if isinstance(options, RenderOptions):
            render_options = options
        else:
            render_options = self.settings.render_defaults.merged(options)
        validate_render_options(render_options)

        record_id = str(uuid.uuid4())
        image_url = await self.renderer.render(data, render_options)

        now = self.clock()
        lifetime_hours = hours if hours is not None else self.settings.expiry_hours
        record = QRRecord(
            id=record_id,
            data=data,
            qr_image_url=image_url,
            created_at=now,
            expires_at=now + lifetime_hours * 3600,
            user_id=user_id,
            metadata=metadata,
        )

        tier = await self._write_of_record(record)
        LOGGER.info("QR code %s stored in %s tier", record_id, tier.name)

        await self._populate_cache(record, now)
        return record

    async def _write_of_record(self, record: QRRecord) -> RecordTier:
        for tier in self.durable_tiers:
            result = await tier.attempt("insert", record)
            if result.ok:
                return tier

        if not self.settings.allow_degraded_persistence:
            LOGGER.error("All durable tiers unavailable; refusing memory-only write for QR %s", record.id)
            raise DegradedPersistence("Database storage failed")

        await self.memory_tier.insert(record)
        LOGGER.warning("QR code %s stored in memory only (degraded mode)", record.id)
        return self.memory_tier

    # ------------------------------------------------------------------ retrieve

    async def retrieve(self, record_id: str, scan_info: Optional[ScanInfo] = None) -> QRRecord:
        """Return a visible record; the scan log and access count update in the background.

        The returned access count is the value before this retrieval.

        Raises:
            RecordNotFound: If no tier holds a visible record for `record_id`.
        """
        now = self.clock()
        source: Optional[RecordTier] = None

        record = await self.cache.get(record_id)
        if record is not None and not record.is_visible(now):
            await self.cache.delete(record_id)
            record = None

        if record is not None:
            LOGGER.debug("QR code %s retrieved from cache", record_id)
        else:
            found = await self._first_visible(record_id, now)
            if found is None:
                raise RecordNotFound(record_id)
            record, source = found.value, found.tier
            LOGGER.debug("QR code %s retrieved from %s tier", record_id, source.name)
            await self._populate_cache(record, now)

        if self.scan_log is not None:
            self._submit(self.scan_log.append(record_id, scan_info or ScanInfo(), now), f"scan log for {record_id}")

        self._submit(self._increment_access(record_id, source), f"increment access for {record_id}")
        return record

    async def _first_visible(self, record_id: str, now: float) -> Optional[TierResult]:
        for tier in self.tiers:
            result = await tier.attempt("find_visible", record_id, now)
            if result.ok:
                return result
        return None

    async def _increment_access(self, record_id: str, source: Optional[RecordTier]) -> bool:
        order = self.tiers
        if source is not None:
            order = [source] + [tier for tier in order if tier is not source]
        for tier in order:
            result = await tier.attempt("increment_access", record_id)
            if result.ok and result.value:
                LOGGER.debug("Access count incremented for QR %s in %s tier", record_id, tier.name)
                return True
        LOGGER.warning("Access count for QR %s was not incremented in any tier", record_id)
        return False

    # ------------------------------------------------------------------ delete

    async def delete(self, record_id: str, user_id: Optional[str] = None) -> bool:
        """Retire the record in every tier that holds it.

        Raises:
            RecordNotFound: If no tier retired anything (absent, already
                retired, expired, or owned by someone else).
        """
        now = self.clock()
        retired = False
        for tier in self.tiers:
            result = await tier.attempt("retire", record_id, now, user_id)
            if result.ok and result.value:
                LOGGER.info("QR code %s retired in %s tier", record_id, tier.name)
                retired = True

        if not retired:
            raise RecordNotFound(record_id, "QR code not found or access denied")

        await self.cache.delete(record_id)
        return True

    # ------------------------------------------------------------------ cleanup

    async def cleanup_expired(self, now: Optional[float] = None) -> int:
        """Physically delete expired records from every tier; return the total removed."""
        now = self.clock() if now is None else now
        deleted = 0
        for tier in self.tiers:
            result = await tier.attempt("purge_expired", now)
            if result.ok and result.value:
                LOGGER.info("Cleaned up %s expired QR codes from %s tier", result.value, tier.name)
                deleted += result.value
        if deleted:
            LOGGER.info("Total cleaned up: %s expired QR codes", deleted)
        return deleted

    # ------------------------------------------------------------------ stats

    async def compute_stats(self, user_id: Optional[str] = None) -> CodeStats:
        """Return record and scan totals. Never raises; degrades to zeros."""
        now = self.clock()
        try:
            for tier in self.durable_tiers:
                result = await tier.attempt("aggregate_stats", now, user_id)
                if result.ok:
                    stats = result.value
                    if self.scan_log is not None:
                        stats.merge_scans(await self.scan_log.aggregate(user_id=user_id))
                    return stats

            result = await self.memory_tier.attempt("aggregate_stats", now, user_id)
            if result.ok:
                return result.value
        except Exception:  # pylint: disable=broad-exception-caught
            LOGGER.exception("Stats computation failed; returning zeroed stats")
        return CodeStats()

    # ------------------------------------------------------------------ helpers

    def _cache_ttl(self, record: QRRecord, now: float) -> int:
        remaining = record.seconds_until_expiry(now)
        ttl = self.settings.cache_default_ttl_seconds if remaining is None else remaining
        return min(ttl, self.settings.cache_ttl_ceiling_seconds)

    async def _populate_cache(self, record: QRRecord, now: float) -> None:
        await self.cache.put(record, self._cache_ttl(record, now))

    def _submit(self, coro, label: str) -> asyncio.Task:
        """Run `coro` in the background; failures are logged and dropped."""
        task = asyncio.create_task(coro)
        self._background.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._background.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                LOGGER.error("Background task failed (%s): %s", label, exc)

        task.add_done_callback(_done)
        return task

    async def drain(self) -> None:
        """Wait for pending background work (scan logging and access-count updates)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
            self._background = {task for task in self._background if not task.done()}

    async def close(self) -> None:
        await self.drain()
        for tier in self.tiers:
            await tier.close()
        await self.cache.close()
