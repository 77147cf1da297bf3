"""
Background sync triggers using APScheduler: a periodic job and a debounced
job re-armed on every local save.
"""

import logging
from datetime import timedelta
from typing import Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..config.settings import SyncSettings
from ..exceptions import ConfigurationError, NoteSyncException, create_error_context
from ..utils import utcnow
from .engine import SyncEngine
from .models import SyncOptions
from .persistence import SyncSettingsStore

logger = logging.getLogger(__name__)

PERIODIC_JOB_ID = "periodic-sync"
DEBOUNCE_JOB_ID = "debounced-sync"


class SyncScheduler:
    """Schedules silent sync triggers for a SyncEngine."""

    def __init__(self,
                 engine: SyncEngine,
                 settings: Optional[SyncSettingsStore] = None,
                 timezone: str = "UTC"):
        """Initialize sync scheduler.

        Args:
            engine: Engine to trigger
            settings: Settings store; defaults to the engine's
            timezone: Timezone for scheduling (default: UTC)
        """
        self.engine = engine
        self.settings = settings or engine.settings
        self.scheduler = AsyncIOScheduler(timezone=timezone)
        self._running = False
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the scheduler and arm the periodic job from current settings."""
        if self._running:
            logger.warning("Sync scheduler already running")
            return

        logger.info("Starting sync scheduler...")
        try:
            self.scheduler.start()
            self._running = True
        except Exception as e:
            logger.error(f"Failed to start sync scheduler: {e}")
            raise ConfigurationError(
                message=f"Failed to start scheduler: {str(e)}",
                error_code="SCHEDULER_START_FAILED",
                context=create_error_context(operation="scheduler_start"),
                user_message="Failed to start the sync scheduler.",
                cause=e,
            )

        self._unsubscribe = self.settings.subscribe(self._on_settings_changed)
        self._arm_periodic(self.settings.current)
        logger.info("Sync scheduler started")

    async def stop(self, wait: bool = True) -> None:
        """Stop the scheduler.

        Args:
            wait: Wait for running jobs to complete
        """
        if not self._running:
            logger.warning("Sync scheduler not running")
            return

        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        self.scheduler.shutdown(wait=wait)
        self._running = False
        logger.info("Sync scheduler stopped")

    def notify_saved(self) -> bool:
        """
        Re-arm the debounced sync after a local save.

        Returns:
            True if a sync was scheduled
        """
        settings = self.settings.current
        if not self._running or not settings.sync_on_save or not settings.auto_sync_enabled:
            return False

        run_at = utcnow() + timedelta(seconds=settings.debounce_seconds)
        self.scheduler.add_job(
            func=self._run_sync,
            trigger=DateTrigger(run_date=run_at),
            args=["debounce"],
            id=DEBOUNCE_JOB_ID,
            name="Debounced sync after save",
            replace_existing=True,
            misfire_grace_time=60,
        )
        logger.debug(f"Debounced sync scheduled for {run_at.isoformat()}")
        return True

    def cancel_pending(self) -> None:
        self._remove_job(DEBOUNCE_JOB_ID)

    def _arm_periodic(self, settings: SyncSettings) -> None:
        if not settings.auto_sync_enabled or settings.sync_interval_minutes <= 0:
            self._remove_job(PERIODIC_JOB_ID)
            self._remove_job(DEBOUNCE_JOB_ID)
            logger.info("Periodic sync disabled")
            return

        self.scheduler.add_job(
            func=self._run_sync,
            trigger=IntervalTrigger(minutes=settings.sync_interval_minutes),
            args=["periodic"],
            id=PERIODIC_JOB_ID,
            name="Periodic sync",
            replace_existing=True,
            misfire_grace_time=300,
            coalesce=True,  # Run once if multiple executions missed
        )
        logger.info(f"Periodic sync every {settings.sync_interval_minutes} minutes")

    def _on_settings_changed(self, settings: SyncSettings) -> None:
        if self._running:
            self._arm_periodic(settings)

    def _remove_job(self, job_id: str) -> None:
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            pass

    async def _run_sync(self, reason: str) -> None:
        logger.debug(f"Running {reason} sync")
        try:
            result = await self.engine.trigger_sync(SyncOptions(silent=True))
            logger.info(f"{reason.capitalize()} sync finished: {result.action.value}")
        except NoteSyncException as e:
            logger.error(f"{reason.capitalize()} sync failed: {e}")
