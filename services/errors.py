"""Error types raised by the QR record service and its storage tiers."""

from __future__ import annotations

from typing import Optional


class QRServiceError(Exception):
    """Base class for every error the record service can raise."""


class ValidationError(QRServiceError):
    """Input was malformed or outside the accepted ranges."""


class StorageUnavailable(QRServiceError):
    """A storage tier could not be reached or did not answer in time.

    Raised by tiers and consumed by the record service as a fallback
    trigger. Callers of the service never see it directly.
    """

    def __init__(self, tier: str, reason: Optional[str] = None) -> None:
        self.tier = tier
        self.reason = reason
        detail = f"{tier} tier unavailable"
        if reason:
            detail = f"{detail}: {reason}"
        super().__init__(detail)


class RecordNotFound(QRServiceError):
    """No tier holds a visible record for the requested id."""

    def __init__(self, record_id: str, message: str = "QR code not found or expired") -> None:
        self.record_id = record_id
        super().__init__(message)


class RenderError(QRServiceError):
    """The QR image could not be rendered; nothing was persisted."""


class DegradedPersistence(QRServiceError):
    """Every durable tier refused a write and memory-only storage is not allowed."""
