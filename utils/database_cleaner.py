"""Periodic removal of expired QR codes from every storage tier."""

import asyncio
import logging

from services.record_service import RecordService

LOGGER = logging.getLogger(__name__)


class CleanupAlreadyRunning(RuntimeError):
    """A cleanup pass was requested while another one was still in progress."""


class DatabaseCleaner:
    """Run `RecordService.cleanup_expired` once or on a fixed interval."""

    def __init__(self, service: RecordService, interval_seconds: int = 3_600) -> None:
        """
        Args:
            service: Record service whose tiers should be purged.
            interval_seconds: Seconds to sleep between periodic runs.
        """
        self._service = service
        self.interval_seconds = interval_seconds
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_once(self) -> int:
        """Purge expired records now and return the count removed.

        Raises:
            CleanupAlreadyRunning: If another pass is in progress.
        """
        if self._running:
            raise CleanupAlreadyRunning("Cleanup already running")
        self._running = True
        try:
            return await self._service.cleanup_expired()
        finally:
            self._running = False

    async def run_periodic_cleanup(self) -> None:
        """
        Repeatedly purge expired records at the configured interval until cancelled.

        A tick that finds a pass still in progress is skipped.
        """
        while True:
            try:
                await asyncio.sleep(self.interval_seconds)
                LOGGER.info("Starting cleanup of expired QR codes")
                deleted = await self.run_once()
                LOGGER.info("Cleanup completed. Deleted %s expired QR codes.", deleted)
            except asyncio.CancelledError:
                break
            except CleanupAlreadyRunning:
                LOGGER.info("Cleanup already running, skipping")
            except Exception:  # pylint: disable=broad-exception-caught
                # Keep the loop alive; the next tick retries.
                LOGGER.exception("Cleanup failed")
