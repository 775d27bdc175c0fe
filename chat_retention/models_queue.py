"""
Freshdesk ticket queue: tickets are stored here first and created by a background poller.

status: pending -> processing -> completed, or back to pending with next_attempt_at
pushed out, or failed once attempts reach max_attempts.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from chat_retention.base import Base

TicketStatus = type(
    "TicketStatus",
    (),
    {"PENDING": "pending", "PROCESSING": "processing", "COMPLETED": "completed", "FAILED": "failed"},
)()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FreshdeskTicketQueue(Base):
    __tablename__ = "freshdesk_ticket_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ticket_data: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=TicketStatus.PENDING)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utc_now)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utc_now)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    freshdesk_ticket_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    chatbot_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_freshdesk_queue_status", "status"),
        Index("ix_freshdesk_queue_next_attempt", "next_attempt_at"),
        Index("ix_freshdesk_queue_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<FreshdeskTicketQueue id={self.id} status={self.status} attempts={self.attempts}>"
