"""Append-only scan history stored next to the primary tier.

Every retrieval adds one row to `qr_scan_logs`. Both operations are
best-effort: failures are logged and never raised to the caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from typing import Optional

from models.qr_record import ScanInfo, ScanStats
from utils.database_init import AsyncDatabaseInitializer

LOGGER = logging.getLogger(__name__)


class ScanLog:
	"""Record and aggregate QR scan events.

	Args:
		db_initializer: Shared connection provider for the primary SQLite database.
		timeout_seconds: Upper bound for any single scan-log statement.
	"""

	def __init__(self, db_initializer: AsyncDatabaseInitializer, timeout_seconds: float = 3.0) -> None:
		self._db = db_initializer
		self.timeout_seconds = timeout_seconds

	async def append(self, record_id: str, scan_info: ScanInfo, now: float) -> bool:
		"""Insert one scan event. Returns False (after logging) if it could not be written."""
		try:
			await asyncio.wait_for(self._append(record_id, scan_info, now), timeout=self.timeout_seconds)
		except (sqlite3.Error, OSError, asyncio.TimeoutError) as exc:
			LOGGER.warning("Failed to log scan for QR %s: %s", record_id, exc)
			return False
		LOGGER.debug("Scan logged for QR %s", record_id)
		return True

	async def _append(self, record_id: str, scan_info: ScanInfo, now: float) -> None:
		async with self._db.connection() as conn:
			await conn.execute(
				"""
				INSERT INTO qr_scan_logs (qr_id, scanned_at, scanner_ip, scanner_user_agent, scanner_location, metadata)
				VALUES (?, ?, ?, ?, ?, ?)
				""",
				(
					record_id,
					now,
					scan_info.ip,
					scan_info.user_agent,
					scan_info.location,
					json.dumps(scan_info.metadata or {}),
				),
			)
			await conn.commit()

	async def aggregate(self, record_id: Optional[str] = None, user_id: Optional[str] = None) -> ScanStats:
		"""Return scan totals, optionally for one record or one owner's active records.

		Falls back to all-zero stats if the database cannot be queried.
		"""
		try:
			return await asyncio.wait_for(self._aggregate(record_id, user_id), timeout=self.timeout_seconds)
		except (sqlite3.Error, OSError, asyncio.TimeoutError) as exc:
			LOGGER.warning("Failed to get scan stats: %s", exc)
			return ScanStats()

	async def _aggregate(self, record_id: Optional[str], user_id: Optional[str]) -> ScanStats:
		sql = (
			"SELECT COUNT(DISTINCT s.qr_id), COUNT(s.id), COUNT(DISTINCT s.scanner_ip) "
			"FROM qr_scan_logs s"
		)
		clauses = []
		params: list = []
		if user_id is not None:
			# Ownership lives on the record, so owner-scoped totals only see
			# scans of records still active in this database.
			sql += " JOIN qr_codes q ON s.qr_id = q.id"
			clauses.append("q.is_active = 1 AND q.user_id = ?")
			params.append(user_id)
		if record_id is not None:
			clauses.append("s.qr_id = ?")
			params.append(record_id)
		if clauses:
			sql += " WHERE " + " AND ".join(clauses)

		async with self._db.connection() as conn:
			cur = await conn.execute(sql, tuple(params))
			row = await cur.fetchone()
		if not row:
			return ScanStats()
		return ScanStats(
			scanned_codes=int(row[0] or 0),
			total_scans=int(row[1] or 0),
			unique_scanners=int(row[2] or 0),
		)
