"""Wire configuration, database and background jobs into one start()/stop() unit."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chat_retention.config import AppConfig
from chat_retention.db import get_session_factory, set_database_url
from chat_retention.freshdesk import FreshdeskClient
from chat_retention.scheduler import RetentionScheduler, TicketQueuePoller
from chat_retention.ticket_queue import FreshdeskQueueService

logger = logging.getLogger(__name__)


class BackgroundServices:
    """GDPR cleanup schedule plus (when configured) the Freshdesk queue poller on one scheduler."""

    def __init__(
        self,
        config: AppConfig,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        scheduler: AsyncIOScheduler | None = None,
    ):
        if session_factory is None:
            set_database_url(config.database_url)
            session_factory = get_session_factory()
        self.config = config
        self.session_factory = session_factory
        self.scheduler = scheduler or AsyncIOScheduler()
        self.retention = RetentionScheduler(
            session_factory,
            hour=config.gdpr_cleanup_hour,
            minute=config.gdpr_cleanup_minute,
            scheduler=self.scheduler,
        )
        self.queue_service: FreshdeskQueueService | None = None
        self.ticket_poller: TicketQueuePoller | None = None
        if config.freshdesk_enabled:
            client = None
            if config.freshdesk_domain and config.freshdesk_api_key:
                client = FreshdeskClient(config.freshdesk_domain, config.freshdesk_api_key)
            self.queue_service = FreshdeskQueueService(
                session_factory, client, development_mode=config.development_mode
            )
            self.ticket_poller = TicketQueuePoller(
                self.queue_service,
                interval_seconds=config.freshdesk_poll_seconds,
                batch_size=config.freshdesk_batch_size,
                scheduler=self.scheduler,
            )
        else:
            logger.info("Freshdesk not configured; ticket queue poller disabled")

    def start(self) -> None:
        """Register jobs and start the scheduler; must be called with an event loop running."""
        self.retention.start()
        if self.ticket_poller is not None:
            self.ticket_poller.start()
        if not self.scheduler.running:
            self.scheduler.start()

    def stop(self) -> None:
        self.retention.stop()
        if self.ticket_poller is not None:
            self.ticket_poller.stop()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
