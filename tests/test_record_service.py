# tests/test_record_service.py
"""
Tests for RecordService, the fallback-chain orchestrator.

These tests verify:
- Generate writes to the first reachable durable tier and populates the cache
- Degraded (memory-only) writes are governed by configuration
- Retrieve walks cache -> durable tiers -> memory and repopulates the cache
- Access counts are bumped in the background
- Delete retires in every tier and is owner-scoped
- Cleanup counts exactly the expired records
- Stats never raise
"""

import asyncio

import pytest

from conftest import STUB_IMAGE_URL, HangingTier, StubRenderer, UnavailableTier, make_record
from dal.record_tier import RecordTier
from models.qr_record import ScanInfo
from models.render_options import RenderOptions
from services.cache import RecordCache, cache_key
from services.errors import DegradedPersistence, RecordNotFound, RenderError, ValidationError

HOUR = 3600


class TestGenerate:
    async def test_writes_primary_and_caches(self, make_service, sqlite_tier, fake_redis, clock):
        service = make_service([sqlite_tier])

        record = await service.generate("https://x.test", user_id="alice", metadata={"k": "v"})

        stored = await sqlite_tier.find_visible(record.id, clock())
        assert stored is not None
        assert stored.data == "https://x.test"
        assert stored.user_id == "alice"
        assert stored.metadata == {"k": "v"}
        assert record.access_count == 0
        assert record.qr_image_url == STUB_IMAGE_URL
        assert record.created_at == clock()
        assert record.expires_at == clock() + 24 * HOUR
        assert fake_redis.ttls[cache_key(record.id)] == 24 * HOUR

    async def test_expiry_override(self, make_service, sqlite_tier, clock):
        record = await make_service([sqlite_tier]).generate("data", expiry_hours=2)

        assert record.expires_at == clock() + 2 * HOUR

    async def test_cache_ttl_is_capped(self, make_service, sqlite_tier, fake_redis, settings):
        settings.cache_ttl_ceiling_seconds = 600
        record = await make_service([sqlite_tier]).generate("data")

        assert fake_redis.ttls[cache_key(record.id)] == 600

    async def test_falls_back_to_secondary(self, make_service, sqlite_tier, clock):
        primary = UnavailableTier("primary")
        service = make_service([primary, sqlite_tier])

        record = await service.generate("https://x.test")

        assert primary.calls == ["insert"]
        assert await sqlite_tier.find_visible(record.id, clock()) is not None

        service.cache = RecordCache(None)
        fetched = await service.retrieve(record.id)
        assert fetched.data == "https://x.test"

    async def test_hanging_primary_times_out_to_secondary(self, make_service, sqlite_tier, clock):
        service = make_service([HangingTier(timeout_seconds=0.05), sqlite_tier])

        record = await service.generate("payload")

        assert await sqlite_tier.find_visible(record.id, clock()) is not None

    async def test_degraded_write_refused_by_default(self, make_service, memory_tier, fake_redis):
        service = make_service([UnavailableTier("primary"), UnavailableTier("secondary")])

        with pytest.raises(DegradedPersistence):
            await service.generate("payload")

        assert len(memory_tier) == 0
        assert fake_redis.store == {}

    async def test_degraded_write_allowed_by_config(self, make_service, memory_tier, settings):
        settings.allow_degraded_persistence = True
        service = make_service([UnavailableTier("primary"), UnavailableTier("secondary")])

        record = await service.generate("payload")

        assert record.id in memory_tier
        service.cache = RecordCache(None)
        assert (await service.retrieve(record.id)).data == "payload"

    async def test_render_failure_persists_nothing(self, make_service, sqlite_tier, clock, fake_redis):
        service = make_service([sqlite_tier], renderer=StubRenderer(fail=True))

        with pytest.raises(RenderError):
            await service.generate("payload")

        stats = await sqlite_tier.aggregate_stats(clock())
        assert stats.total_codes == 0
        assert fake_redis.store == {}

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"data": ""},
            {"data": "x" * 2049},
            {"data": "ok", "expiry_hours": 0},
            {"data": "ok", "expiry_hours": 9000},
            {"data": "ok", "options": {"width": 50}},
            {"data": "ok", "options": {"errorCorrectionLevel": "X"}},
            {"data": "ok", "options": {"margin": 11}},
            {"data": "ok", "user_id": "u" * 256},
        ],
    )
    async def test_validation_errors(self, make_service, sqlite_tier, renderer, kwargs):
        service = make_service([sqlite_tier])
        extra = {key: value for key, value in kwargs.items() if key != "data"}

        with pytest.raises(ValidationError):
            await service.generate(kwargs["data"], **extra)

        assert renderer.calls == []

    async def test_render_options_are_merged_with_defaults(self, make_service, sqlite_tier):
        captured = []

        class CapturingRenderer(StubRenderer):
            async def render(self, data, options=None):
                captured.append(options)
                return await super().render(data, options)

        service = make_service([sqlite_tier], renderer=CapturingRenderer())
        await service.generate("x", options={"width": 500})

        assert captured == [RenderOptions(error_correction="M", width=500, margin=1)]


class TestRetrieve:
    async def test_scenario_generate_retrieve_expire(self, make_service, sqlite_tier, clock):
        service = make_service([sqlite_tier])
        record = await service.generate("https://x.test", expiry_hours=1)

        first = await service.retrieve(record.id)
        assert first.data == "https://x.test"
        assert first.access_count == 0

        await service.drain()
        clock.advance(60)
        second = await service.retrieve(record.id)
        assert second.access_count in (0, 1)

        clock.advance(HOUR)
        assert await service.cleanup_expired() >= 1
        with pytest.raises(RecordNotFound):
            await service.retrieve(record.id)

    async def test_cache_aside(self, make_service, sqlite_tier, fake_redis, clock):
        service = make_service([sqlite_tier])
        record = make_record(expires_at=clock() + 600)
        await sqlite_tier.insert(record)

        first = await service.retrieve(record.id)
        assert cache_key(record.id) in fake_redis.store
        assert fake_redis.ttls[cache_key(record.id)] == 600

        # Durable tiers gone: the second read can only be served by the cache.
        service.durable_tiers = [UnavailableTier("primary")]
        second = await service.retrieve(record.id)

        assert second.data == first.data
        assert second.qr_image_url == first.qr_image_url

    async def test_cache_outage_falls_through_to_tiers(self, make_service, sqlite_tier, fake_redis, clock):
        service = make_service([sqlite_tier])
        record = make_record(expires_at=clock() + 600)
        await sqlite_tier.insert(record)
        fake_redis.down = True

        assert (await service.retrieve(record.id)).id == record.id

    async def test_not_found_when_absent_everywhere(self, make_service, sqlite_tier):
        service = make_service([UnavailableTier("primary"), sqlite_tier])

        with pytest.raises(RecordNotFound):
            await service.retrieve("00000000-0000-4000-8000-0000000000ff")

    async def test_not_found_when_all_tiers_down(self, make_service):
        service = make_service([UnavailableTier("primary"), UnavailableTier("secondary")])

        with pytest.raises(RecordNotFound):
            await service.retrieve("00000000-0000-4000-8000-0000000000ff")

    async def test_continues_past_not_found_to_later_tier(self, make_service, sqlite_tier, memory_tier, clock):
        service = make_service([sqlite_tier])
        record = make_record(expires_at=clock() + 600)
        await memory_tier.insert(record)

        assert (await service.retrieve(record.id)).id == record.id

    async def test_invisible_records_behave_as_absent(self, make_service, sqlite_tier, clock):
        service = make_service([sqlite_tier])
        retired = make_record("00000000-0000-4000-8000-000000000011", is_active=False)
        expired = make_record("00000000-0000-4000-8000-000000000012", expires_at=clock() - 1)
        await sqlite_tier.insert(retired)
        await sqlite_tier.insert(expired)

        for record_id in (retired.id, expired.id):
            with pytest.raises(RecordNotFound):
                await service.retrieve(record_id)

    async def test_stale_cache_entry_is_ignored_after_expiry(self, make_service, sqlite_tier, fake_redis, clock):
        service = make_service([sqlite_tier])
        record = await service.generate("short", expiry_hours=1)

        clock.advance(2 * HOUR)

        with pytest.raises(RecordNotFound):
            await service.retrieve(record.id)
        assert cache_key(record.id) not in fake_redis.store

    async def test_access_count_increment_in_background(self, make_service, sqlite_tier, clock):
        service = make_service([sqlite_tier])
        record = make_record(expires_at=clock() + 600)
        await sqlite_tier.insert(record)

        returned = await service.retrieve(record.id)
        await service.drain()

        assert returned.access_count == 0
        assert (await sqlite_tier.find_visible(record.id, clock())).access_count == 1

    async def test_increment_lands_in_tier_holding_record(self, make_service, sqlite_tier, memory_tier, clock):
        service = make_service([sqlite_tier])
        record = make_record(expires_at=clock() + 600)
        await memory_tier.insert(record)

        await service.retrieve(record.id)
        await service.drain()

        assert (await memory_tier.find_visible(record.id, clock())).access_count == 1

    async def test_increment_failure_does_not_fail_retrieve(self, make_service, memory_tier, clock):
        class BrokenIncrementTier(type(memory_tier)):
            async def _increment_access(self, record_id):
                raise RuntimeError("boom")

        tier = BrokenIncrementTier()
        record = make_record(expires_at=clock() + 600)
        await tier.insert(record)
        service = make_service([], memory_tier=tier)

        assert (await service.retrieve(record.id)).id == record.id
        await service.drain()

    async def test_scan_is_logged(self, make_service, sqlite_tier, scan_log, clock):
        service = make_service([sqlite_tier])
        record = make_record(expires_at=clock() + 600)
        await sqlite_tier.insert(record)

        await service.retrieve(record.id, ScanInfo(ip="10.1.1.1", user_agent="pytest"))
        await service.retrieve(record.id, ScanInfo(ip="10.1.1.2"))
        await service.drain()

        stats = await scan_log.aggregate(record_id=record.id)
        assert stats.total_scans == 2
        assert stats.unique_scanners == 2

    async def test_slow_scan_log_does_not_delay_retrieve(self, make_service, sqlite_tier, clock):
        gate = asyncio.Event()
        appended = []

        class StalledScanLog:
            async def append(self, record_id, scan_info, now):
                await gate.wait()
                appended.append(record_id)
                return True

        service = make_service([sqlite_tier], scan_log=StalledScanLog())
        record = make_record(expires_at=clock() + 600)
        await sqlite_tier.insert(record)

        fetched = await asyncio.wait_for(service.retrieve(record.id), timeout=1.0)
        assert fetched.id == record.id
        assert appended == []

        gate.set()
        await service.drain()
        assert appended == [record.id]
        assert stats.unique_scanners == 2


class TestDelete:
    async def test_delete_then_not_found(self, make_service, sqlite_tier, fake_redis):
        service = make_service([sqlite_tier])
        record = await service.generate("payload")

        assert await service.delete(record.id) is True
        assert cache_key(record.id) not in fake_redis.store

        with pytest.raises(RecordNotFound):
            await service.delete(record.id)
        with pytest.raises(RecordNotFound):
            await service.retrieve(record.id)

    async def test_owner_scoped_delete(self, make_service, sqlite_tier):
        service = make_service([sqlite_tier])
        record = await service.generate("payload", user_id="alice")

        with pytest.raises(RecordNotFound):
            await service.delete(record.id, user_id="bob")

        assert (await service.retrieve(record.id)).id == record.id
        assert await service.delete(record.id, user_id="alice") is True

    async def test_delete_retires_in_every_tier(self, make_service, sqlite_tier, memory_tier, clock):
        service = make_service([UnavailableTier("primary"), sqlite_tier])
        record = make_record(expires_at=clock() + 600)
        await sqlite_tier.insert(record)
        await memory_tier.insert(record)

        assert await service.delete(record.id) is True

        assert await sqlite_tier.find_visible(record.id, clock()) is None
        assert await memory_tier.find_visible(record.id, clock()) is None

    async def test_delete_missing(self, make_service, sqlite_tier):
        with pytest.raises(RecordNotFound):
            await make_service([sqlite_tier]).delete("00000000-0000-4000-8000-0000000000ff")


class TestCleanup:
    async def test_removes_exactly_expired(self, make_service, sqlite_tier, memory_tier, clock):
        service = make_service([UnavailableTier("primary"), sqlite_tier])
        now = clock()
        await sqlite_tier.insert(make_record("00000000-0000-4000-8000-000000000021", expires_at=now - 10))
        await sqlite_tier.insert(make_record("00000000-0000-4000-8000-000000000022", expires_at=now - 10, is_active=False))
        await sqlite_tier.insert(make_record("00000000-0000-4000-8000-000000000023", expires_at=now + 10))
        await memory_tier.insert(make_record("00000000-0000-4000-8000-000000000024", expires_at=now - 1))
        await memory_tier.insert(make_record("00000000-0000-4000-8000-000000000025", expires_at=None))

        assert await service.cleanup_expired() == 3
        assert await service.cleanup_expired() == 0
        assert len(memory_tier) == 1

    async def test_explicit_now(self, make_service, memory_tier, clock):
        service = make_service([])
        await memory_tier.insert(make_record(expires_at=clock() + 100))

        assert await service.cleanup_expired(now=clock()) == 0
        assert await service.cleanup_expired(now=clock() + 101) == 1


class TestStats:
    async def test_stats_from_primary_with_scans(self, make_service, sqlite_tier, clock):
        service = make_service([sqlite_tier])
        a = await service.generate("a", user_id="alice")
        await service.generate("b", user_id="bob")
        await service.retrieve(a.id, ScanInfo(ip="1.1.1.1"))
        await service.drain()

        stats = await service.compute_stats()
        assert stats.to_dict() == {
            "totalCodes": 2,
            "activeCodes": 2,
            "totalAccesses": 1,
            "totalScans": 1,
            "uniqueScanners": 1,
            "scannedCodes": 1,
        }

        bob = await service.compute_stats("bob")
        assert bob.total_codes == 1
        assert bob.total_scans == 0

    async def test_all_durable_down_and_memory_empty_gives_zeros(self, make_service):
        service = make_service([UnavailableTier("primary"), UnavailableTier("secondary")])

        stats = await service.compute_stats()

        assert stats.to_dict() == {
            "totalCodes": 0,
            "activeCodes": 0,
            "totalAccesses": 0,
            "totalScans": 0,
            "uniqueScanners": 0,
            "scannedCodes": 0,
        }

    async def test_memory_fallback_stats(self, make_service, memory_tier, clock):
        service = make_service([UnavailableTier("primary")])
        await memory_tier.insert(make_record("00000000-0000-4000-8000-000000000031", user_id="alice", access_count=4))
        await memory_tier.insert(make_record("00000000-0000-4000-8000-000000000032", user_id="bob", expires_at=clock() - 1))

        stats = await service.compute_stats()
        assert (stats.total_codes, stats.active_codes, stats.total_accesses) == (2, 1, 4)
        assert stats.total_scans == 0

        alice = await service.compute_stats("alice")
        assert alice.total_codes == 1

    async def test_unexpected_error_degrades_to_zero(self, make_service, memory_tier):
        class ExplodingTier(type(memory_tier)):
            async def _aggregate_stats(self, now, user_id):
                raise RuntimeError("unexpected")

        service = make_service([ExplodingTier()])

        stats = await service.compute_stats()
        assert stats.total_codes == 0


class TestLifecycle:
    async def test_tiers_order(self, make_service, sqlite_tier, memory_tier):
        service = make_service([sqlite_tier])

        assert service.tiers == [sqlite_tier, memory_tier]
        assert all(isinstance(tier, RecordTier) for tier in service.tiers)

    async def test_close_drains_and_closes(self, make_service, sqlite_tier, clock):
        service = make_service([sqlite_tier])
        record = make_record(expires_at=clock() + 600)
        await sqlite_tier.insert(record)
        await service.retrieve(record.id)

        await service.close()

        assert (await sqlite_tier.find_visible(record.id, clock())).access_count == 1
