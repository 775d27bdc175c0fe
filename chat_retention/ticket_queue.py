"""
Durable Freshdesk ticket queue.

Tickets are inserted as pending rows; process_pending_tickets() (driven by TicketQueuePoller)
creates them in Freshdesk. Each row records its own outcome: completed with the ticket id,
pending again with exponential backoff, or failed after max_attempts. A row taken for
processing holds a lease (next_attempt_at); reclaim_stale_tickets() returns rows whose lease
ran out without a recorded outcome.
"""

import asyncio
import logging
import random
import string
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chat_retention.db import session_scope
from chat_retention.models_queue import FreshdeskTicketQueue, TicketStatus

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5
DEFAULT_PENDING_LIMIT = 10
COMPLETED_RETENTION_DAYS = 7
# A processing row whose lease ran out (worker died or bookkeeping failed) is handed back.
PROCESSING_LEASE = timedelta(minutes=10)
STALE_PROCESSING_ERROR = "processing lease expired before the outcome was recorded"


class TicketClient(Protocol):
    """Anything that can create a ticket (FreshdeskClient or a test double)."""

    async def create_ticket(self, ticket_data: dict[str, Any]) -> dict[str, Any]: ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def backoff_delay(attempts: int) -> timedelta:
    """2^attempts minutes."""
    return timedelta(minutes=2**attempts)


class FreshdeskQueueService:
    """Queue operations over freshdesk_ticket_queue; one short transaction per state change."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: TicketClient | None = None,
        development_mode: bool = False,
    ):
        """
        Args:
            session_factory: Async session factory for the queue table.
            client: Ticket API client; may be None only in development_mode.
            development_mode: Complete tickets with a fake id instead of calling Freshdesk.
        """
        if client is None and not development_mode:
            raise ValueError("client is required unless development_mode is enabled")
        self._session_factory = session_factory
        self._client = client
        self.development_mode = development_mode

    async def queue_ticket(
        self,
        ticket_data: dict[str, Any],
        chatbot_id: str | None = None,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        """Insert a pending ticket; returns {"queue_id", "queued_at"}."""
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                sa.insert(FreshdeskTicketQueue)
                .values(
                    ticket_data=ticket_data,
                    chatbot_id=chatbot_id,
                    user_id=user_id,
                    status=TicketStatus.PENDING,
                    next_attempt_at=_utc_now(),
                )
                .returning(FreshdeskTicketQueue.id, FreshdeskTicketQueue.created_at)
            )
            row = result.one()
        logger.info(f"Freshdesk ticket queued: queue_id={row.id}")
        return {"queue_id": row.id, "queued_at": row.created_at}

    async def get_pending_tickets(self, limit: int = DEFAULT_PENDING_LIMIT) -> list[FreshdeskTicketQueue]:
        """Pending rows due now with attempts left, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                sa.select(FreshdeskTicketQueue)
                .where(
                    FreshdeskTicketQueue.status == TicketStatus.PENDING,
                    FreshdeskTicketQueue.next_attempt_at <= sa.func.now(),
                    FreshdeskTicketQueue.attempts < FreshdeskTicketQueue.max_attempts,
                )
                .order_by(FreshdeskTicketQueue.created_at.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def _update(self, queue_id: int, **values: Any) -> None:
        async with session_scope(self._session_factory) as session:
            await session.execute(
                sa.update(FreshdeskTicketQueue).where(FreshdeskTicketQueue.id == queue_id).values(**values)
            )

    async def mark_as_processing(self, queue_id: int, now: datetime | None = None) -> None:
        await self._update(
            queue_id,
            status=TicketStatus.PROCESSING,
            attempts=FreshdeskTicketQueue.attempts + 1,
            next_attempt_at=(now or _utc_now()) + PROCESSING_LEASE,
        )

    async def mark_as_completed(self, queue_id: int, freshdesk_ticket_id: str) -> None:
        await self._update(
            queue_id,
            status=TicketStatus.COMPLETED,
            processed_at=_utc_now(),
            freshdesk_ticket_id=str(freshdesk_ticket_id),
            error_message=None,
        )
        logger.info(f"Freshdesk ticket completed: queue_id={queue_id}, ticket_id={freshdesk_ticket_id}")

    async def mark_as_failed(
        self,
        queue_id: int,
        error_message: str,
        attempts: int,
        max_attempts: int,
        now: datetime | None = None,
    ) -> None:
        """Schedule a retry after backoff_delay(attempts), or fail permanently at max_attempts."""
        now = now or _utc_now()
        if attempts >= max_attempts:
            await self._update(
                queue_id,
                status=TicketStatus.FAILED,
                error_message=error_message,
                processed_at=now,
            )
            logger.error(f"Freshdesk ticket permanently failed: queue_id={queue_id}, error={error_message}")
            return

        next_attempt_at = now + backoff_delay(attempts)
        await self._update(
            queue_id,
            status=TicketStatus.PENDING,
            error_message=error_message,
            next_attempt_at=next_attempt_at,
        )
        logger.warning(
            f"Freshdesk ticket retry scheduled: queue_id={queue_id}, "
            f"next_attempt={next_attempt_at.isoformat()}, attempts={attempts}/{max_attempts}"
        )

    async def process_ticket(self, entry: FreshdeskTicketQueue) -> dict[str, Any]:
        """
        Create one queued ticket.

        Ticket API failures and a failed completion update are logged and returned as
        {"success": False, ...}, not raised.
        """
        attempt = entry.attempts + 1
        logger.info(f"Processing Freshdesk ticket: queue_id={entry.id}, attempt={attempt}/{entry.max_attempts}")
        await self.mark_as_processing(entry.id)

        if self.development_mode:
            fake_id = "dev-ticket-{}-{}".format(
                int(_utc_now().timestamp() * 1000),
                "".join(random.choices(string.ascii_lowercase + string.digits, k=5)),
            )
            await self.mark_as_completed(entry.id, fake_id)
            return {"success": True, "ticket_id": fake_id, "development_mode": True}

        try:
            ticket = await self._client.create_ticket(entry.ticket_data)
        except Exception as e:
            logger.error(f"Failed to process Freshdesk ticket: queue_id={entry.id}", exc_info=True)
            await self.mark_as_failed(entry.id, str(e), attempt, entry.max_attempts)
            return {"success": False, "error": str(e)}

        try:
            await self.mark_as_completed(entry.id, ticket["id"])
        except Exception as e:
            logger.error(
                f"Freshdesk ticket created but completion not recorded: queue_id={entry.id}, "
                f"ticket_id={ticket['id']}",
                exc_info=True,
            )
            # With the id stored, reclaim_stale_tickets() completes the row instead of retrying it.
            try:
                await self._update(entry.id, freshdesk_ticket_id=str(ticket["id"]))
            except Exception:
                logger.error(f"Could not store Freshdesk ticket id on queue_id={entry.id}", exc_info=True)
            return {"success": False, "ticket_id": ticket["id"], "error": str(e)}
        return {"success": True, "ticket_id": ticket["id"]}

    async def reclaim_stale_tickets(self, now: datetime | None = None) -> int:
        """
        Return processing rows whose lease expired to the queue.

        Rows that already carry a freshdesk_ticket_id become completed; rows with attempts left
        go back to pending (due immediately); the rest become failed. Returns the number of rows
        reclaimed.
        """
        now = now or _utc_now()
        created = FreshdeskTicketQueue.freshdesk_ticket_id.is_not(None)
        exhausted = FreshdeskTicketQueue.attempts >= FreshdeskTicketQueue.max_attempts
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                sa.update(FreshdeskTicketQueue)
                .where(
                    FreshdeskTicketQueue.status == TicketStatus.PROCESSING,
                    FreshdeskTicketQueue.next_attempt_at <= now,
                )
                .values(
                    status=sa.case(
                        (created, TicketStatus.COMPLETED),
                        (exhausted, TicketStatus.FAILED),
                        else_=TicketStatus.PENDING,
                    ),
                    processed_at=sa.case(
                        (created | exhausted, sa.literal(now, sa.DateTime(timezone=True))),
                        else_=FreshdeskTicketQueue.processed_at,
                    ),
                    error_message=sa.case((created, None), else_=STALE_PROCESSING_ERROR),
                    next_attempt_at=now,
                )
            )
            reclaimed = result.rowcount or 0
        if reclaimed:
            logger.warning(f"Reclaimed {reclaimed} stale processing Freshdesk queue entries")
        return reclaimed

    async def process_pending_tickets(self, batch_size: int = DEFAULT_BATCH_SIZE) -> dict[str, Any]:
        """Drain up to batch_size due tickets concurrently; returns processed/successful/failed counts."""
        await self.reclaim_stale_tickets()
        pending = await self.get_pending_tickets(batch_size)
        if not pending:
            return {"processed": 0, "successful": 0, "failed": 0}

        logger.info(f"Processing {len(pending)} pending Freshdesk tickets")
        results = await asyncio.gather(*(self.process_ticket(entry) for entry in pending), return_exceptions=True)
        for entry, outcome in zip(pending, results):
            if isinstance(outcome, BaseException):
                logger.error(f"Freshdesk queue bookkeeping failed: queue_id={entry.id}", exc_info=outcome)

        successful = sum(1 for r in results if isinstance(r, dict) and r.get("success"))
        failed = len(results) - successful
        logger.info(f"Freshdesk batch processing complete: {successful} successful, {failed} failed")
        return {"processed": len(results), "successful": successful, "failed": failed}

    async def get_queue_stats(self, now: datetime | None = None) -> dict[str, int]:
        """Row count per status for rows created in the last 24 hours."""
        since = (now or _utc_now()) - timedelta(hours=24)
        async with self._session_factory() as session:
            result = await session.execute(
                sa.select(FreshdeskTicketQueue.status, sa.func.count())
                .where(FreshdeskTicketQueue.created_at > since)
                .group_by(FreshdeskTicketQueue.status)
                .order_by(FreshdeskTicketQueue.status)
            )
            return {status: int(count) for status, count in result.all()}

    async def cleanup_old_tickets(self, days: int = COMPLETED_RETENTION_DAYS, now: datetime | None = None) -> int:
        """Delete completed/failed rows processed more than `days` ago; returns deleted count."""
        before = (now or _utc_now()) - timedelta(days=days)
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                sa.delete(FreshdeskTicketQueue).where(
                    FreshdeskTicketQueue.status.in_([TicketStatus.COMPLETED, TicketStatus.FAILED]),
                    FreshdeskTicketQueue.processed_at < before,
                )
            )
            deleted = result.rowcount or 0
        if deleted:
            logger.info(f"Cleaned up {deleted} old Freshdesk queue entries")
        return deleted
