"""
Background jobs: daily GDPR cleanup and the Freshdesk queue poller.

Both are explicitly constructed components with start()/stop() around an APScheduler
AsyncIOScheduler (one may be shared). Jobs never overlap themselves and a failed run is
logged, not raised, so the schedule keeps firing.
"""

import logging
from datetime import datetime, tzinfo
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chat_retention.constants import DEFAULT_CLEANUP_HOUR, DEFAULT_CLEANUP_MINUTE
from chat_retention.gdpr import TenantCleanupOutcome, run_gdpr_cleanup_all
from chat_retention.ticket_queue import DEFAULT_BATCH_SIZE, FreshdeskQueueService

logger = logging.getLogger(__name__)

GDPR_JOB_ID = "gdpr_cleanup"
TICKET_POLL_JOB_ID = "freshdesk_queue_poll"
TICKET_PURGE_JOB_ID = "freshdesk_queue_purge"

RunAllFn = Callable[[async_sessionmaker[AsyncSession]], Awaitable[list[TenantCleanupOutcome]]]


class _ScheduledComponent:
    def __init__(self, scheduler: AsyncIOScheduler | None):
        self._scheduler = scheduler
        self._owns_scheduler = scheduler is None
        self._job_ids: list[str] = []

    @property
    def running(self) -> bool:
        return bool(self._job_ids)

    def _add_job(self, func: Callable[[], Awaitable[Any]], trigger: Any, job_id: str) -> None:
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            func,
            trigger,
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._job_ids.append(job_id)

    def _start_scheduler(self) -> None:
        if self._owns_scheduler and not self._scheduler.running:
            self._scheduler.start()

    def stop(self) -> None:
        """Remove this component's jobs; shut the scheduler down if this component created it."""
        if self._scheduler is None or not self._job_ids:
            return
        for job_id in self._job_ids:
            if self._scheduler.get_job(job_id) is not None:
                self._scheduler.remove_job(job_id)
        self._job_ids = []
        if self._owns_scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=False)


class RetentionScheduler(_ScheduledComponent):
    """Runs GDPR cleanup for all enabled tenants daily at hour:minute local time."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        hour: int = DEFAULT_CLEANUP_HOUR,
        minute: int = DEFAULT_CLEANUP_MINUTE,
        timezone: tzinfo | str | None = None,
        scheduler: AsyncIOScheduler | None = None,
        run_all: RunAllFn = run_gdpr_cleanup_all,
    ):
        """
        Args:
            session_factory: Async session factory handed to run_all.
            hour, minute: Wall-clock time of the daily run.
            timezone: Trigger timezone; None means the host's local timezone.
            scheduler: Shared scheduler; when None one is created and owned by this component.
            run_all: Batch function (run_gdpr_cleanup_all, or a stand-in in tests).
        """
        super().__init__(scheduler)
        self._session_factory = session_factory
        self._trigger = CronTrigger(hour=hour, minute=minute, timezone=timezone)
        self._run_all = run_all
        self.last_outcomes: list[TenantCleanupOutcome] = []

    def start(self) -> None:
        if self.running:
            return
        self._add_job(self.run_once, self._trigger, GDPR_JOB_ID)
        self._start_scheduler()
        logger.info(f"GDPR cleanup scheduled: next run at {self.next_run_time()}")

    def next_run_time(self, now: datetime | None = None) -> datetime | None:
        """Next fire time of the daily trigger after now (defaults to the trigger's current time)."""
        if now is None:
            now = datetime.now(self._trigger.timezone)
        return self._trigger.get_next_fire_time(None, now)

    async def run_once(self) -> list[TenantCleanupOutcome]:
        try:
            outcomes = await self._run_all(self._session_factory)
        except Exception:
            logger.error("Scheduled GDPR cleanup failed", exc_info=True)
            return []
        failed = [o.chatbot_id for o in outcomes if not o.success]
        logger.info(
            f"Scheduled GDPR cleanup completed: {len(outcomes)} tenants, {len(failed)} failed"
            + (f" ({', '.join(failed)})" if failed else "")
        )
        self.last_outcomes = outcomes
        return outcomes


class TicketQueuePoller(_ScheduledComponent):
    """Drains the Freshdesk queue every interval_seconds and purges old rows daily."""

    def __init__(
        self,
        queue_service: FreshdeskQueueService,
        interval_seconds: int = 60,
        batch_size: int = DEFAULT_BATCH_SIZE,
        purge_hour: int = 3,
        scheduler: AsyncIOScheduler | None = None,
    ):
        super().__init__(scheduler)
        self._queue = queue_service
        self._interval_seconds = interval_seconds
        self._batch_size = batch_size
        self._purge_hour = purge_hour

    def start(self) -> None:
        if self.running:
            return
        self._add_job(self.poll_once, IntervalTrigger(seconds=self._interval_seconds), TICKET_POLL_JOB_ID)
        self._add_job(self.purge_once, CronTrigger(hour=self._purge_hour, minute=0), TICKET_PURGE_JOB_ID)
        self._start_scheduler()
        logger.info(f"Freshdesk queue poller started: every {self._interval_seconds}s, batch {self._batch_size}")

    async def poll_once(self) -> dict[str, Any] | None:
        try:
            return await self._queue.process_pending_tickets(self._batch_size)
        except Exception:
            logger.error("Freshdesk queue poll failed", exc_info=True)
            return None

    async def purge_once(self) -> int:
        try:
            return await self._queue.cleanup_old_tickets()
        except Exception:
            logger.error("Freshdesk queue purge failed", exc_info=True)
            return 0
