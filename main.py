import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles

from dal.memory_tier import MemoryRecordTier
from dal.postgres_tier import PostgresRecordTier
from dal.record_tier import RecordTier
from dal.scan_log import ScanLog
from dal.sqlite_tier import SQLiteRecordTier
from routes.health_route import router as health_router
from routes.qr_route import router as qr_router
from services.cache import RecordCache
from services.errors import StorageUnavailable
from services.qr_renderer import QRRenderer
from services.record_service import RecordService
from utils.database_cleaner import DatabaseCleaner
from utils.database_init import AsyncDatabaseInitializer
from utils.settings import Settings

BASE_DIR = Path(__file__).resolve().parent
PUBLIC_DIR = BASE_DIR / "public"

from dotenv import load_dotenv

load_dotenv()  # Load environment variables from .env file if present

LOGGER = logging.getLogger(__name__)


def build_record_service(settings: Settings) -> RecordService:
    """Wire the tiers, cache, scan log and renderer described by `settings`."""
    timeout = settings.tier_timeout_seconds
    db_initializer = AsyncDatabaseInitializer(settings.database_dir)

    durable_tiers: list[RecordTier] = [SQLiteRecordTier(db_initializer, timeout_seconds=timeout)]
    if settings.postgres_url:
        durable_tiers.append(PostgresRecordTier(settings.postgres_url, timeout_seconds=timeout))

    return RecordService(
        durable_tiers=durable_tiers,
        memory_tier=MemoryRecordTier(timeout_seconds=timeout),
        cache=RecordCache.from_url(settings.redis_url, timeout_seconds=timeout),
        scan_log=ScanLog(db_initializer, timeout_seconds=timeout),
        renderer=QRRenderer(settings.render_defaults),
        settings=settings,
    )


async def connect_tiers(service: RecordService) -> None:
    """Connect every tier; an unreachable tier is logged and left for fallback."""
    for tier in service.tiers:
        try:
            await tier.connect()
            LOGGER.info("%s tier connected", tier.name)
        except StorageUnavailable as exc:
            LOGGER.warning("%s tier unavailable at startup: %s", tier.name, exc.reason or exc)
    await service.cache.connect()


def create_app(settings: Optional[Settings] = None, record_service: Optional[RecordService] = None) -> FastAPI:
    """
    Create and configure the FastAPI application instance.

    `settings` defaults to `Settings.from_env()` at startup; `record_service`
    defaults to one built from those settings.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Lifespan manager to initialize:
          - settings and logging
          - the record service with its tiers, cache and scan log
          - the periodic cleanup loop
        and attach them to `app.state`.
        """
        app_settings = settings or (record_service.settings if record_service else Settings.from_env())
        logging.basicConfig(
            level=app_settings.log_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

        service = record_service or build_record_service(app_settings)
        await connect_tiers(service)
        app.state.settings = app_settings
        app.state.record_service = service

        cleaner = DatabaseCleaner(service, interval_seconds=app_settings.cleanup_interval_seconds)
        app.state.cleaner = cleaner
        cleanup_task = None
        if app_settings.cleanup_interval_seconds > 0:
            cleanup_task = asyncio.create_task(cleaner.run_periodic_cleanup())
            LOGGER.info("Cleanup service started (every %ss)", app_settings.cleanup_interval_seconds)

        try:
            yield
        finally:
            if cleanup_task is not None:
                cleanup_task.cancel()
                try:
                    await cleanup_task
                except asyncio.CancelledError:
                    pass
            await service.close()

    app = FastAPI(lifespan=lifespan, title="QR Code Service")

    # Serve static assets from the public directory, if it exists.
    if PUBLIC_DIR.exists():
        app.mount("/public", StaticFiles(directory=PUBLIC_DIR), name="public")

    @app.get("/", include_in_schema=False)
    async def serve_index():
        """
        Serve the frontend index page from the public directory.
        """
        index_path = PUBLIC_DIR / "index.html"
        if not index_path.exists():
            raise HTTPException(status_code=404, detail="Frontend not found")
        return FileResponse(index_path)

    # Register application routers
    app.include_router(health_router)
    app.include_router(qr_router)

    return app


app = create_app()
