"""Health, readiness and liveness checks for the QR service."""

from __future__ import annotations

import os
import time
from datetime import datetime, timezone
from typing import Any, Dict, Tuple

from fastapi import Request

from services.record_service import RecordService

STARTED_AT = time.monotonic()
VERSION = "1.0.0"


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


def _uptime() -> float:
	return round(time.monotonic() - STARTED_AT, 3)


def basic_health() -> Dict[str, Any]:
	return {
		"status": "healthy",
		"timestamp": _now_iso(),
		"uptime": _uptime(),
		"pid": os.getpid(),
		"version": VERSION,
	}


async def _dependency_status(service: RecordService) -> Dict[str, str]:
	status: Dict[str, str] = {}
	for tier in service.durable_tiers:
		status[tier.name] = "healthy" if await tier.ping() else "unhealthy"
	if service.cache.enabled:
		status["redis"] = "healthy" if await service.cache.ping() else "unhealthy"
	else:
		status["redis"] = "disabled"
	return status


async def detailed_health(request: Request) -> Tuple[int, Dict[str, Any]]:
	"""Ping every durable tier and the cache.

	Returns:
		`(status_code, body)`; 503 when any enabled dependency is unhealthy.
	"""
	service: RecordService = request.app.state.record_service
	dependencies = await _dependency_status(service)
	degraded = any(value == "unhealthy" for value in dependencies.values())
	body = basic_health()
	body["status"] = "degraded" if degraded else "healthy"
	body["dependencies"] = dependencies
	body["memoryRecords"] = len(service.memory_tier)
	return (503 if degraded else 200), body


async def readiness(request: Request) -> Tuple[int, Dict[str, Any]]:
	"""Ready once at least one durable tier answers."""
	service: RecordService = request.app.state.record_service
	dependencies = await _dependency_status(service)
	durable_up = [tier.name for tier in service.durable_tiers if dependencies.get(tier.name) == "healthy"]
	if not durable_up:
		return 503, {"status": "not ready", "timestamp": _now_iso(), "checkedServices": len(dependencies)}
	return 200, {"status": "ready", "timestamp": _now_iso(), "checkedServices": len(dependencies)}


def liveness() -> Dict[str, Any]:
	return {"status": "alive", "timestamp": _now_iso(), "uptime": _uptime()}
