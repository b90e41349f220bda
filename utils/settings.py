"""Application settings read from environment variables.

`main.py` calls `load_dotenv()` before `Settings.from_env()`, so values may
come from a `.env` file as well as the process environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from models.render_options import ERROR_CORRECTION_LEVELS, RenderOptions
from services.errors import ValidationError
from utils.payload_validation import validate_render_options

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name}={raw!r} is not an integer") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name}={raw!r} is not a number") from exc


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise RuntimeError(f"{name}={raw!r} is not a boolean (use true/false)")


@dataclass
class Settings:
    """Runtime configuration for the QR service.

    Attributes:
        database_dir: Directory holding the SQLite file (primary tier).
        expiry_hours: Default record lifetime when a caller gives none.
        render_defaults: Default error-correction level, width and margin.
        max_data_length: Upper bound on payload length in characters.
        cache_ttl_ceiling_seconds: Cache entries never live longer than this.
        cache_default_ttl_seconds: Cache TTL for records without an expiry.
        tier_timeout_seconds: Per-call timeout applied to every tier.
        postgres_url: DSN for the secondary tier, or None to disable it.
        redis_url: URL for the cache, or None to disable it.
        allow_degraded_persistence: Whether Generate may accept a memory-only write.
        cleanup_interval_seconds: Period of the in-process cleanup loop (0 disables).
        log_level: Root logging level name.
    """

    database_dir: str
    expiry_hours: int = 24
    render_defaults: RenderOptions = field(default_factory=RenderOptions)
    max_data_length: int = 2048
    cache_ttl_ceiling_seconds: int = 86_400
    cache_default_ttl_seconds: int = 3_600
    tier_timeout_seconds: float = 3.0
    postgres_url: Optional[str] = None
    redis_url: Optional[str] = None
    allow_degraded_persistence: bool = False
    cleanup_interval_seconds: int = 3_600
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the environment.

        Raises:
            RuntimeError: If DATABASE_DIR is missing or a value cannot be parsed.
        """
        database_dir = os.getenv("DATABASE_DIR")
        if database_dir is None or not database_dir.strip():
            raise RuntimeError(
                "DATABASE_DIR environment variable must be set to a writable "
                "directory path where the SQLite database file will be stored."
            )

        level = os.getenv("QR_CODE_ERROR_CORRECTION", "M").strip().upper()
        if level not in ERROR_CORRECTION_LEVELS:
            raise RuntimeError(
                f"QR_CODE_ERROR_CORRECTION={level!r} must be one of {', '.join(ERROR_CORRECTION_LEVELS)}"
            )
        render_defaults = RenderOptions(
            error_correction=level,
            width=_env_int("QR_CODE_SIZE", 200),
            margin=_env_int("QR_CODE_MARGIN", 1),
        )
        try:
            validate_render_options(render_defaults)
        except ValidationError as exc:
            raise RuntimeError(f"Invalid QR_CODE_SIZE/QR_CODE_MARGIN default: {exc}") from exc

        postgres_url = None
        if _env_bool("POSTGRES_ENABLED", True):
            postgres_url = os.getenv("DATABASE_URL") or _postgres_url_from_parts()

        redis_url = None
        if _env_bool("REDIS_ENABLED", True):
            redis_url = os.getenv("REDIS_URL") or _redis_url_from_parts()

        settings = cls(
            database_dir=database_dir,
            expiry_hours=_env_int("QR_CODE_EXPIRY_HOURS", 24),
            render_defaults=render_defaults,
            max_data_length=_env_int("QR_MAX_DATA_LENGTH", 2048),
            cache_ttl_ceiling_seconds=_env_int("CACHE_TTL_CEILING_SECONDS", 86_400),
            cache_default_ttl_seconds=_env_int("CACHE_DEFAULT_TTL_SECONDS", 3_600),
            tier_timeout_seconds=_env_float("TIER_TIMEOUT_SECONDS", 3.0),
            postgres_url=postgres_url,
            redis_url=redis_url,
            allow_degraded_persistence=_env_bool("ALLOW_DEGRADED_PERSISTENCE", False),
            cleanup_interval_seconds=_env_int("CLEANUP_INTERVAL_SECONDS", 3_600),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )
        if settings.expiry_hours <= 0:
            raise RuntimeError("QR_CODE_EXPIRY_HOURS must be positive")
        if settings.tier_timeout_seconds <= 0:
            raise RuntimeError("TIER_TIMEOUT_SECONDS must be positive")
        return settings


def _postgres_url_from_parts() -> str:
    user = os.getenv("POSTGRES_USER", "qr_user")
    password = os.getenv("POSTGRES_PASSWORD", "")
    host = os.getenv("POSTGRES_HOST", "localhost")
    port = _env_int("POSTGRES_PORT", 5432)
    database = os.getenv("POSTGRES_DB", "qr_system")
    auth = f"{user}:{password}" if password else user
    return f"postgresql://{auth}@{host}:{port}/{database}"


def _redis_url_from_parts() -> str:
    host = os.getenv("REDIS_HOST", "localhost")
    port = _env_int("REDIS_PORT", 6379)
    db = _env_int("REDIS_DB", 0)
    password = os.getenv("REDIS_PASSWORD")
    auth = f":{password}@" if password else ""
    return f"redis://{auth}{host}:{port}/{db}"
