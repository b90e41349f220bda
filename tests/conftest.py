# tests/conftest.py
"""
Shared fixtures and test doubles for the QR service tests.

- FakeRedis: async stand-in for `redis.asyncio.Redis` (get/set/delete/ping)
- FakeClock: controllable time source injected into RecordService
- UnavailableTier / HangingTier: tiers that simulate outages and hangs
- StubRenderer: instant renderer that can be told to fail
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from dal.memory_tier import MemoryRecordTier
from dal.record_tier import RecordTier
from dal.scan_log import ScanLog
from dal.sqlite_tier import SQLiteRecordTier
from models.qr_record import CodeStats, QRRecord
from services.cache import RecordCache
from services.errors import RenderError, StorageUnavailable
from services.record_service import RecordService
from utils.database_init import AsyncDatabaseInitializer
from utils.settings import Settings

START_TIME = 1_700_000_000.0
STUB_IMAGE_URL = "data:image/png;base64,c3R1Yg=="


class FakeClock:
    """Callable clock whose time only moves when told to."""

    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """Minimal async Redis double. Set `down = True` to simulate an outage."""

    def __init__(self) -> None:
        self.store: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise RedisConnectionError("Connection refused")

    async def ping(self) -> bool:
        self._check()
        return True

    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self.store.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        self._check()
        self.store[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def delete(self, key: str) -> int:
        self._check()
        self.ttls.pop(key, None)
        return 1 if self.store.pop(key, None) is not None else 0

    async def aclose(self) -> None:
        return None


class UnavailableTier(RecordTier):
    """A durable tier whose every call reports StorageUnavailable."""

    name = "down"

    def __init__(self, name: str = "down") -> None:
        super().__init__(timeout_seconds=1.0)
        self.name = name
        self.calls: List[str] = []

    async def _fail(self, operation: str) -> Any:
        self.calls.append(operation)
        raise StorageUnavailable(self.name, "connection refused")

    async def _ping(self) -> None:
        await self._fail("ping")

    async def _insert(self, record):
        return await self._fail("insert")

    async def _find_visible(self, record_id, now):
        return await self._fail("find_visible")

    async def _retire(self, record_id, now, user_id):
        return await self._fail("retire")

    async def _increment_access(self, record_id):
        return await self._fail("increment_access")

    async def _purge_expired(self, now):
        return await self._fail("purge_expired")

    async def _aggregate_stats(self, now, user_id) -> CodeStats:
        return await self._fail("aggregate_stats")


class HangingTier(UnavailableTier):
    """A tier that never answers; only its timeout gets the caller out."""

    def __init__(self, timeout_seconds: float = 0.05) -> None:
        super().__init__("hanging")
        self.timeout_seconds = timeout_seconds

    async def _fail(self, operation: str) -> Any:
        self.calls.append(operation)
        await asyncio.sleep(3600)


class StubRenderer:
    """Renderer double returning a fixed data URL, or raising RenderError."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: List[str] = []

    async def render(self, data: str, options=None) -> str:
        self.calls.append(data)
        if self.fail:
            raise RenderError("Failed to render QR code: boom")
        return STUB_IMAGE_URL


def make_record(
    record_id: str = "00000000-0000-4000-8000-000000000001",
    *,
    created_at: float = START_TIME,
    expires_at: Optional[float] = START_TIME + 3600,
    user_id: Optional[str] = None,
    is_active: bool = True,
    access_count: int = 0,
    data: str = "https://x.test",
) -> QRRecord:
    return QRRecord(
        id=record_id,
        data=data,
        qr_image_url=STUB_IMAGE_URL,
        created_at=created_at,
        expires_at=expires_at,
        access_count=access_count,
        user_id=user_id,
        metadata={"source": "test"},
        is_active=is_active,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(database_dir=str(tmp_path / "db"), cleanup_interval_seconds=0)


@pytest.fixture
def db_initializer(settings) -> AsyncDatabaseInitializer:
    return AsyncDatabaseInitializer(settings.database_dir)


@pytest.fixture
def sqlite_tier(db_initializer) -> SQLiteRecordTier:
    return SQLiteRecordTier(db_initializer, timeout_seconds=5.0)


@pytest.fixture
def scan_log(db_initializer) -> ScanLog:
    return ScanLog(db_initializer, timeout_seconds=5.0)


@pytest.fixture
def memory_tier() -> MemoryRecordTier:
    return MemoryRecordTier()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def cache(fake_redis) -> RecordCache:
    return RecordCache(fake_redis, timeout_seconds=1.0)


@pytest.fixture
def renderer() -> StubRenderer:
    return StubRenderer()


@pytest.fixture
def make_service(memory_tier, cache, scan_log, renderer, settings, clock):
    """Factory building a RecordService; durable tiers default to none."""

    def _make(durable_tiers=(), **overrides) -> RecordService:
        kwargs = dict(
            durable_tiers=list(durable_tiers),
            memory_tier=memory_tier,
            cache=cache,
            scan_log=scan_log,
            renderer=renderer,
            settings=settings,
            clock=clock,
        )
        kwargs.update(overrides)
        return RecordService(**kwargs)

    return _make
