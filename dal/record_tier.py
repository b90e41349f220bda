"""Common contract for the storage tiers behind the record service.

Every tier (SQLite, PostgreSQL, in-process memory) exposes the same
operations so the service can walk them as an ordered list. Public methods
apply the tier's timeout and translate connectivity failures into
`StorageUnavailable`; subclasses implement the underscored hooks.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Generic, Optional, Tuple, Type, TypeVar

from models.qr_record import CodeStats, QRRecord
from services.errors import StorageUnavailable

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class TierStatus(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"


@dataclass
class TierResult(Generic[T]):
    """Outcome of a single tier call, as seen by the service loop."""

    status: TierStatus
    tier: "RecordTier"
    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is TierStatus.OK


class RecordTier(ABC):
    """Base class for a storage tier.

    Attributes:
        name: Short label used in logs and health output.
        durable: False for tiers that lose their contents on restart.
        timeout_seconds: Upper bound on any single call to this tier.
        unavailable_errors: Exception types that mean "cannot reach the store"
            rather than "the store rejected the request".
    """

    name: str = "tier"
    durable: bool = True
    unavailable_errors: Tuple[Type[BaseException], ...] = (OSError, ConnectionError)

    def __init__(self, timeout_seconds: float = 3.0) -> None:
        self.timeout_seconds = timeout_seconds

    async def _guard(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except StorageUnavailable:
            raise
        except asyncio.TimeoutError as exc:
            raise StorageUnavailable(self.name, f"{operation} timed out after {self.timeout_seconds}s") from exc
        except self.unavailable_errors as exc:
            raise StorageUnavailable(self.name, f"{operation} failed: {exc}") from exc

    async def attempt(self, operation: str, *args: Any, **kwargs: Any) -> TierResult[Any]:
        """Run `operation` and wrap the outcome in a TierResult.

        A None return becomes NOT_FOUND; StorageUnavailable becomes UNAVAILABLE.
        Any other exception propagates.
        """
        try:
            value = await getattr(self, operation)(*args, **kwargs)
        except StorageUnavailable as exc:
            LOGGER.warning("%s on %s tier unavailable: %s", operation, self.name, exc.reason or exc)
            return TierResult(TierStatus.UNAVAILABLE, self, error=str(exc))
        if value is None:
            return TierResult(TierStatus.NOT_FOUND, self)
        return TierResult(TierStatus.OK, self, value=value)

    # Lifecycle

    async def connect(self) -> None:
        """Open connections / create schema. Failures are reported as StorageUnavailable."""

    async def close(self) -> None:
        """Release any held connections."""

    async def ping(self) -> bool:
        """Return True if the tier answers a trivial query within its timeout."""
        try:
            await self._guard("ping", self._ping())
        except StorageUnavailable:
            return False
        return True

    # Record contract

    async def insert(self, record: QRRecord) -> QRRecord:
        return await self._guard("insert", self._insert(record))

    async def find_visible(self, record_id: str, now: float) -> Optional[QRRecord]:
        """Return the record if it is active and unexpired at `now`, else None."""
        return await self._guard("find_visible", self._find_visible(record_id, now))

    async def retire(self, record_id: str, now: float, user_id: Optional[str] = None) -> bool:
        """Mark a visible record inactive. Returns False if nothing matched (including owner mismatch)."""
        return await self._guard("retire", self._retire(record_id, now, user_id))

    async def increment_access(self, record_id: str) -> bool:
        """Bump access_count by one. Returns True if this tier holds the record."""
        return await self._guard("increment_access", self._increment_access(record_id))

    async def purge_expired(self, now: float) -> int:
        """Physically delete every record whose expiry is before `now`; return the count."""
        return await self._guard("purge_expired", self._purge_expired(now))

    async def aggregate_stats(self, now: float, user_id: Optional[str] = None) -> CodeStats:
        """Count non-retired records, the visible subset, and their summed accesses."""
        return await self._guard("aggregate_stats", self._aggregate_stats(now, user_id))

    @abstractmethod
    async def _ping(self) -> None: ...

    @abstractmethod
    async def _insert(self, record: QRRecord) -> QRRecord: ...

    @abstractmethod
    async def _find_visible(self, record_id: str, now: float) -> Optional[QRRecord]: ...

    @abstractmethod
    async def _retire(self, record_id: str, now: float, user_id: Optional[str]) -> bool: ...

    @abstractmethod
    async def _increment_access(self, record_id: str) -> bool: ...

    @abstractmethod
    async def _purge_expired(self, now: float) -> int: ...

    @abstractmethod
    async def _aggregate_stats(self, now: float, user_id: Optional[str]) -> CodeStats: ...
