from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class QRRecord:
    """In-memory representation of a row in the `qr_codes` table.

    Attributes:
        id: UUID string, the only lookup key across every tier and the cache.
        data: Original text payload encoded in the QR code.
        qr_image_url: Rendered PNG as a `data:image/png;base64,...` URL.
        created_at: Unix timestamp (seconds) when the record was generated.
        expires_at: Unix timestamp after which the record is invisible, or None.
        access_count: Number of successful retrievals (advisory, eventually consistent).
        user_id: Optional owner used to scope deletion and statistics.
        metadata: Opaque caller-supplied attributes, passed through unmodified.
        is_active: False once the record has been retired by a delete.
    """

    id: str
    data: str
    qr_image_url: str
    created_at: float
    expires_at: Optional[float] = None
    access_count: int = 0
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True

    def is_visible(self, now: float) -> bool:
        """Return True when the record is active and not yet expired at `now`."""
        if not self.is_active:
            return False
        return self.expires_at is None or self.expires_at > now

    def seconds_until_expiry(self, now: float) -> Optional[int]:
        """Whole seconds left before expiry (never negative), or None without an expiry."""
        if self.expires_at is None:
            return None
        return max(0, int(self.expires_at - now))

    def to_dict(self) -> Dict[str, Any]:
        """Serialise every field; used for the cache payload."""
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "QRRecord":
        expires_at = payload.get("expires_at")
        return cls(
            id=str(payload["id"]),
            data=payload["data"],
            qr_image_url=payload["qr_image_url"],
            created_at=float(payload["created_at"]),
            expires_at=float(expires_at) if expires_at is not None else None,
            access_count=int(payload.get("access_count") or 0),
            user_id=payload.get("user_id"),
            metadata=dict(payload.get("metadata") or {}),
            is_active=bool(payload.get("is_active", True)),
        )

    def public_view(self) -> Dict[str, Any]:
        """Return the shape exposed to API callers."""
        return {
            "id": self.id,
            "data": self.data,
            "qrImageUrl": self.qr_image_url,
            "createdAt": _iso(self.created_at),
            "expiresAt": _iso(self.expires_at),
            "accessCount": self.access_count,
        }


@dataclass
class ScanInfo:
    """Client details captured for each retrieval."""

    ip: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ScanStats:
    """Aggregate over the scan log."""

    scanned_codes: int = 0
    total_scans: int = 0
    unique_scanners: int = 0


@dataclass
class CodeStats:
    """Combined record and scan statistics returned by the stats endpoint."""

    total_codes: int = 0
    active_codes: int = 0
    total_accesses: int = 0
    total_scans: int = 0
    unique_scanners: int = 0
    scanned_codes: int = 0

    def merge_scans(self, scans: ScanStats) -> "CodeStats":
        self.total_scans = scans.total_scans
        self.unique_scanners = scans.unique_scanners
        self.scanned_codes = scans.scanned_codes
        return self

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalCodes": self.total_codes,
            "activeCodes": self.active_codes,
            "totalAccesses": self.total_accesses,
            "totalScans": self.total_scans,
            "uniqueScanners": self.unique_scanners,
            "scannedCodes": self.scanned_codes,
        }
