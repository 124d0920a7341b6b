"""
Scheduled Sync - Daily Catch-up
===============================
Background task that re-syncs yesterday's Shiprocket orders and shipments
into Triple Whale once a day, catching anything the webhooks missed.

Features:
- Runs at a fixed local time (default 00:05 Asia/Kolkata)
- Syncs the previous calendar day with sync_type="all"
- Failures are logged and counted, the loop keeps running
- Cancelled cleanly on shutdown
"""

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

import structlog

from pipeline.errors import SyncError
from pipeline.orchestrator import SyncOrchestrator
from settings import SyncConfig

# Configure logger
logger = structlog.get_logger(component="scheduled_sync")


def next_run_after(now: datetime, hour: int, minute: int) -> datetime:
    """First occurrence of hour:minute strictly after ``now`` (same tz)."""
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class ScheduledSync:
    """Daily batch sync driver."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        config: Optional[SyncConfig] = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.orchestrator = orchestrator
        self.config = config or SyncConfig()
        self.tz = ZoneInfo(self.config.timezone)
        self._sleep = sleep
        self._now = now or (lambda: datetime.now(self.tz))
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def seconds_until_next_run(self) -> float:
        now = self._now()
        target = next_run_after(now, self.config.hour, self.config.minute)
        return max(0.0, (target - now).total_seconds())

    async def run_once(self) -> None:
        """Sync yesterday (local date). Errors are logged, never raised."""
        yesterday = (self._now() - timedelta(days=1)).date().isoformat()
        try:
            report = await self.orchestrator.sync_range(yesterday, yesterday, "all")
            logger.info(
                "scheduled_sync_completed",
                date=yesterday,
                orders=report.orders,
                shipments=report.shipments,
                metrics_synced=report.metrics_synced,
            )
        except SyncError as e:
            # Already counted by sync_range
            logger.error("scheduled_sync_failed", date=yesterday, error=str(e), error_type=type(e).__name__)
        except Exception as e:
            logger.exception("scheduled_sync_crashed", date=yesterday, error=str(e))
            self.orchestrator.collector.record_error(str(e))

    async def _loop(self) -> None:
        logger.info(
            "scheduled_sync_started",
            hour=self.config.hour,
            minute=self.config.minute,
            timezone=self.config.timezone,
        )
        while True:
            delay = self.seconds_until_next_run()
            logger.info("scheduled_sync_waiting", seconds=round(delay))
            await self._sleep(delay)
            await self.run_once()

    def start(self) -> bool:
        """Start the loop if enabled. Returns whether it is running."""
        if not self.config.enable_scheduled_sync:
            logger.info("scheduled_sync_disabled")
            return False
        if not self.running:
            self._task = asyncio.create_task(self._loop())
        return True

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("scheduled_sync_stopped")


__all__ = ["ScheduledSync", "next_run_after"]
