"""Per-tenant GDPR retention settings (one row per chatbot)."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, CheckConstraint, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from chat_retention.base import Base


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class GdprSettings(Base):
    """Retention window and switch for a tenant; last_cleanup_run is stamped by each executed cleanup."""

    __tablename__ = "gdpr_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chatbot_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    retention_days: Mapped[int] = mapped_column(Integer, nullable=False, default=90)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_cleanup_run: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now, onupdate=_utc_now
    )

    __table_args__ = (
        CheckConstraint("retention_days >= 1 AND retention_days <= 3650", name="ck_gdpr_settings_retention_days"),
    )

    def __repr__(self) -> str:
        return f"<GdprSettings chatbot_id={self.chatbot_id} days={self.retention_days} enabled={self.enabled}>"
