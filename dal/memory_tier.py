"""Last-resort in-process record store.

Contents are lost on restart. A single instance is created by the app
factory and handed to the record service; tests build their own.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Dict, Optional

from dal.record_tier import RecordTier
from models.qr_record import CodeStats, QRRecord


class MemoryRecordTier(RecordTier):
	"""Keep records in a dict keyed by id.

	Every operation completes without awaiting, so on a single event loop
	no two operations interleave on the mapping.
	"""

	name = "memory"
	durable = False

	def __init__(self, timeout_seconds: float = 3.0) -> None:
		super().__init__(timeout_seconds)
		self._records: Dict[str, QRRecord] = {}

	def __len__(self) -> int:
		return len(self._records)

	def __contains__(self, record_id: object) -> bool:
		return record_id in self._records

	async def _ping(self) -> None:
		return None

	async def _insert(self, record: QRRecord) -> QRRecord:
		stored = replace(record, metadata=dict(record.metadata))
		self._records[record.id] = stored
		return replace(stored)

	async def _find_visible(self, record_id: str, now: float) -> Optional[QRRecord]:
		record = self._records.get(record_id)
		if record is None or not record.is_visible(now):
			return None
		return replace(record)

	async def _retire(self, record_id: str, now: float, user_id: Optional[str]) -> bool:
		record = self._records.get(record_id)
		if record is None or not record.is_visible(now):
			return False
		if user_id is not None and record.user_id != user_id:
			return False
		record.is_active = False
		return True

	async def _increment_access(self, record_id: str) -> bool:
		record = self._records.get(record_id)
		if record is None:
			return False
		record.access_count += 1
		return True

	async def _purge_expired(self, now: float) -> int:
		expired = [
			record_id
			for record_id, record in self._records.items()
			if record.expires_at is not None and record.expires_at < now
		]
		for record_id in expired:
			del self._records[record_id]
		return len(expired)

	async def _aggregate_stats(self, now: float, user_id: Optional[str]) -> CodeStats:
		stats = CodeStats()
		for record in self._records.values():
			if not record.is_active:
				continue
			if user_id is not None and record.user_id != user_id:
				continue
			stats.total_codes += 1
			if record.is_visible(now):
				stats.active_codes += 1
			stats.total_accesses += record.access_count
		return stats
