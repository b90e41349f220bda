import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, Request

from models.qr_record import ScanInfo
from services.errors import DegradedPersistence, QRServiceError, RecordNotFound, RenderError, ValidationError
from services.record_service import RecordService
from utils.database_cleaner import CleanupAlreadyRunning, DatabaseCleaner
from utils.payload_validation import validate_batch, validate_record_id

LOGGER = logging.getLogger(__name__)


def _get_service(request: Request) -> RecordService:
    """Retrieve the shared record service from the app state."""
    service = getattr(request.app.state, "record_service", None)
    if service is None:
        raise HTTPException(status_code=500, detail="Record service not initialized.")
    return service


def _to_http(exc: QRServiceError) -> HTTPException:
    """Translate a service error into the HTTP error callers see."""
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, RecordNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, DegradedPersistence):
        return HTTPException(status_code=503, detail="Database storage failed")
    if isinstance(exc, RenderError):
        return HTTPException(status_code=500, detail="Failed to generate QR code")
    return HTTPException(status_code=500, detail="Internal server error")


def _scan_info(request: Request) -> ScanInfo:
    """Collect scanner details from the request headers."""
    headers = request.headers
    return ScanInfo(
        ip=request.client.host if request.client else None,
        user_agent=headers.get("user-agent"),
        location=headers.get("cf-ipcountry") or headers.get("x-country"),
        metadata={
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "referer": headers.get("referer"),
            "acceptLanguage": headers.get("accept-language"),
        },
    )


async def generate_qr(
    request: Request,
    data: str,
    user_id: Optional[str] = None,
    expiry_hours: Optional[float] = None,
    metadata: Optional[Dict[str, Any]] = None,
    options: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Generate one QR code and return its public view.

    Raises:
        HTTPException(400) on invalid input, 503 when only memory storage was
        available in strict mode, 500 when rendering fails.
    """
    service = _get_service(request)
    try:
        record = await service.generate(
            data, user_id=user_id, expiry_hours=expiry_hours, metadata=metadata, options=options
        )
    except QRServiceError as exc:
        raise _to_http(exc) from exc
    return {"success": True, "data": record.public_view(), "message": "QR code generated successfully"}


async def generate_batch(request: Request, items: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Generate up to ten QR codes concurrently; per-item failures are reported, not raised."""
    service = _get_service(request)
    try:
        validate_batch(items)
    except ValidationError as exc:
        raise _to_http(exc) from exc

    outcomes = await asyncio.gather(
        *(
            service.generate(item["data"], user_id=item.get("userId"), metadata=item.get("metadata"))
            for item in items
        ),
        return_exceptions=True,
    )

    results = []
    errors = []
    for index, outcome in enumerate(outcomes):
        if isinstance(outcome, QRServiceError):
            errors.append({"index": index, "error": str(outcome)})
        elif isinstance(outcome, BaseException):
            LOGGER.error("Batch item %s failed: %s", index, outcome)
            errors.append({"index": index, "error": "Failed to generate QR code"})
        else:
            results.append(outcome.public_view())

    return {
        "success": True,
        "data": {
            "results": results,
            "errors": errors,
            "totalRequested": len(items),
            "totalGenerated": len(results),
        },
    }


async def get_qr(request: Request, record_id: str) -> Dict[str, Any]:
    """Fetch a QR code by id, recording the scan."""
    service = _get_service(request)
    try:
        record = await service.retrieve(validate_record_id(record_id), _scan_info(request))
    except QRServiceError as exc:
        raise _to_http(exc) from exc
    return {"success": True, "data": record.public_view()}


async def delete_qr(request: Request, record_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    """Retire a QR code, optionally only if owned by `user_id`."""
    service = _get_service(request)
    try:
        await service.delete(validate_record_id(record_id), user_id)
    except QRServiceError as exc:
        raise _to_http(exc) from exc
    return {"success": True, "message": "QR code deleted successfully"}


async def get_stats(request: Request, user_id: Optional[str] = None) -> Dict[str, Any]:
    """Return aggregate statistics, optionally for one owner."""
    service = _get_service(request)
    stats = await service.compute_stats(user_id)
    return {"success": True, "data": stats.to_dict()}


async def run_cleanup(request: Request) -> Dict[str, Any]:
    """Purge expired QR codes now.

    Raises:
        HTTPException(409) if a cleanup pass is already in progress.
    """
    cleaner: Optional[DatabaseCleaner] = getattr(request.app.state, "cleaner", None)
    try:
        if cleaner is not None:
            deleted = await cleaner.run_once()
        else:
            deleted = await _get_service(request).cleanup_expired()
    except CleanupAlreadyRunning as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"success": True, "data": {"deleted": deleted}}
