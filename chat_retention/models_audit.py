"""
Audit trail of retention actions.

One row per executed cleanup run: action "gdpr_cleanup", resource "chatbot"/chatbot_id,
details holding the cutoff and the anonymized counts. Rows are written inside the
cleanup transaction, so a rolled-back run leaves none.
"""

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import DateTime, Index, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from chat_retention.base import Base

GDPR_CLEANUP_ACTION = "gdpr_cleanup"
CHATBOT_RESOURCE = "chatbot"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (Index("idx_audit_logs_resource_created", "resource_type", "resource_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utc_now)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(64), nullable=False)
    # chatbot_id for cleanup rows
    resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
