"""FastAPI routes for generating, fetching and retiring QR codes."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from controllers.qr_controller import delete_qr, generate_batch, generate_qr, get_qr, get_stats, run_cleanup

router = APIRouter(prefix="/api/qr", tags=["qr"])


class RenderOptionsPayload(BaseModel):
	errorCorrectionLevel: Optional[str] = None
	width: Optional[int] = None
	margin: Optional[int] = None


class GeneratePayload(BaseModel):
	data: str
	userId: Optional[str] = None
	expiryHours: Optional[float] = None
	metadata: Optional[Dict[str, Any]] = None
	options: Optional[RenderOptionsPayload] = None


class BatchItem(BaseModel):
	data: str
	userId: Optional[str] = None
	metadata: Optional[Dict[str, Any]] = None


class BatchPayload(BaseModel):
	items: List[BatchItem] = Field(default_factory=list)


@router.post("/generate", status_code=201)
async def generate_route(request: Request, payload: GeneratePayload):
	"""Render a QR code for `data` and store it."""
	options = payload.options.model_dump(exclude_none=True) if payload.options else None
	try:
		return await generate_qr(
			request,
			payload.data,
			user_id=payload.userId,
			expiry_hours=payload.expiryHours,
			metadata=payload.metadata,
			options=options,
		)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/batch", status_code=201)
async def batch_route(request: Request, payload: BatchPayload):
	"""Generate several QR codes in one call."""
	try:
		return await generate_batch(request, [item.model_dump() for item in payload.items])
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/cleanup")
async def cleanup_route(request: Request):
	"""Remove expired QR codes from every tier."""
	try:
		return await run_cleanup(request)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


# Registered before /{record_id} so "stats" is never taken for an id.
@router.get("/stats")
async def stats_route(request: Request):
	return await get_stats(request)


@router.get("/stats/{user_id}")
async def user_stats_route(request: Request, user_id: str):
	return await get_stats(request, user_id)


@router.get("/{record_id}")
async def get_route(request: Request, record_id: str):
	"""Return a QR code and count the scan."""
	try:
		return await get_qr(request, record_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.delete("/{record_id}")
async def delete_route(request: Request, record_id: str, userId: Optional[str] = None):
	"""Retire a QR code; pass `userId` to restrict deletion to its owner."""
	try:
		return await delete_qr(request, record_id, userId)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))
