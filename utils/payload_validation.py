"""Validation helpers for QR generation requests and record ids."""

import uuid
from typing import Any, Dict, List, Optional

from models.render_options import ERROR_CORRECTION_LEVELS, RenderOptions
from services.errors import ValidationError

MAX_USER_ID_LENGTH = 255
MIN_EXPIRY_HOURS = 1
MAX_EXPIRY_HOURS = 8_760  # one year
MIN_WIDTH, MAX_WIDTH = 100, 1_000
MIN_MARGIN, MAX_MARGIN = 0, 10
MAX_BATCH_ITEMS = 10


def validate_payload(data: Any, max_length: int) -> str:
    """Return `data` if it is a non-empty string of at most `max_length` characters."""
    if not isinstance(data, str) or not data:
        raise ValidationError("data must be a non-empty string")
    if len(data) > max_length:
        raise ValidationError(f"data must be at most {max_length} characters")
    return data


def validate_user_id(user_id: Optional[str]) -> Optional[str]:
    if user_id is None:
        return None
    if not isinstance(user_id, str) or len(user_id) > MAX_USER_ID_LENGTH:
        raise ValidationError(f"userId must be a string of at most {MAX_USER_ID_LENGTH} characters")
    return user_id


def validate_expiry_hours(expiry_hours: Optional[float]) -> Optional[float]:
    if expiry_hours is None:
        return None
    if isinstance(expiry_hours, bool) or not isinstance(expiry_hours, (int, float)):
        raise ValidationError("expiryHours must be a number")
    if not MIN_EXPIRY_HOURS <= expiry_hours <= MAX_EXPIRY_HOURS:
        raise ValidationError(f"expiryHours must be between {MIN_EXPIRY_HOURS} and {MAX_EXPIRY_HOURS}")
    return float(expiry_hours)


def validate_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object")
    return metadata


def validate_render_options(options: RenderOptions) -> RenderOptions:
    """Check error-correction level, width and margin ranges."""
    if options.error_correction not in ERROR_CORRECTION_LEVELS:
        raise ValidationError(f"errorCorrectionLevel must be one of {', '.join(ERROR_CORRECTION_LEVELS)}")
    if isinstance(options.width, bool) or not isinstance(options.width, int) or not MIN_WIDTH <= options.width <= MAX_WIDTH:
        raise ValidationError(f"width must be an integer between {MIN_WIDTH} and {MAX_WIDTH}")
    if isinstance(options.margin, bool) or not isinstance(options.margin, int) or not MIN_MARGIN <= options.margin <= MAX_MARGIN:
        raise ValidationError(f"margin must be an integer between {MIN_MARGIN} and {MAX_MARGIN}")
    return options


def validate_record_id(record_id: str) -> str:
    """Return the canonical UUID string for `record_id` or raise ValidationError."""
    try:
        return str(uuid.UUID(str(record_id)))
    except ValueError as exc:
        raise ValidationError("Invalid QR code ID format") from exc


def validate_batch(items: List[Any]) -> List[Any]:
    if not items:
        raise ValidationError("items must contain at least one entry")
    if len(items) > MAX_BATCH_ITEMS:
        raise ValidationError(f"items must contain at most {MAX_BATCH_ITEMS} entries")
    return items
