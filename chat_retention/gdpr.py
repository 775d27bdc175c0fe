"""
GDPR retention: policy store, cutoff calculation, preview and anonymization.

- get_gdpr_settings / save_gdpr_settings: one policy row per chatbot (defaults when absent).
- compute_cutoff_date: now - retention_days; conversations created strictly before it are eligible.
- preview_gdpr_cleanup: read-only blast radius report.
- execute_gdpr_cleanup: single transaction redacting legacy messages, atomic messages and
  context chunks in place, then stamping last_cleanup_run.
- run_gdpr_cleanup_all: every enabled tenant, one at a time, collecting per-tenant outcomes.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chat_retention.constants import DEFAULT_RETENTION_DAYS, PREVIEW_SAMPLE_LIMIT, REDACTION_SENTINEL
from chat_retention.db import log_audit
from chat_retention.errors import GdprCleanupError
from chat_retention.legacy_messages import REDACT_LEGACY_MESSAGES_SQL
from chat_retention.models import Conversation, ConversationMessage, MessageContextChunk
from chat_retention.models_audit import CHATBOT_RESOURCE, GDPR_CLEANUP_ACTION
from chat_retention.models_gdpr import GdprSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionPolicy:
    chatbot_id: str
    retention_days: int = DEFAULT_RETENTION_DAYS
    enabled: bool = False
    last_cleanup_run: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PreviewConversation:
    id: int
    created_at: datetime
    emne: str | None
    legacy_message_count: int
    atomic_message_count: int


@dataclass(frozen=True)
class PreviewTotals:
    conversations: int = 0
    legacy_messages: int = 0
    atomic_messages: int = 0
    context_chunks: int = 0


@dataclass(frozen=True)
class CleanupPreview:
    cutoff_date: datetime
    retention_days: int
    sample_conversations: list[PreviewConversation] = field(default_factory=list)
    totals: PreviewTotals = field(default_factory=PreviewTotals)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CleanupResult:
    """
    Counts of one executed cleanup.

    anonymized_legacy_messages counts legacy messages rewritten (array elements, or 1 for a
    non-array conversation_data value), not conversation rows; processed_conversations is the
    row count.
    """

    cutoff_date: datetime
    processed_conversations: int = 0
    anonymized_legacy_messages: int = 0
    anonymized_atomic_messages: int = 0
    anonymized_context_chunks: int = 0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TenantCleanupOutcome:
    """Result of one tenant in a batch run: either result or error is set."""

    chatbot_id: str
    success: bool
    result: CleanupResult | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"chatbot_id": self.chatbot_id, "success": self.success}
        if self.result is not None:
            out.update(self.result.as_dict())
        if self.error is not None:
            out["error"] = self.error
        return out


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def compute_cutoff_date(retention_days: int, now: datetime | None = None) -> datetime:
    """Return now - retention_days days. now defaults to the current UTC time."""
    return (now or _utc_now()) - timedelta(days=retention_days)


def _policy_from_row(row: Any) -> RetentionPolicy:
    return RetentionPolicy(
        chatbot_id=row.chatbot_id,
        retention_days=row.retention_days,
        enabled=row.enabled,
        last_cleanup_run=row.last_cleanup_run,
    )


async def get_gdpr_settings(session: AsyncSession, chatbot_id: str) -> RetentionPolicy:
    """Return the tenant's policy, or the default (90 days, disabled) when none is stored."""
    result = await session.execute(sa.select(GdprSettings).where(GdprSettings.chatbot_id == chatbot_id))
    row = result.scalar_one_or_none()
    if row is None:
        return RetentionPolicy(chatbot_id=chatbot_id)
    return _policy_from_row(row)


async def save_gdpr_settings(
    session: AsyncSession,
    chatbot_id: str,
    retention_days: int,
    enabled: bool,
) -> RetentionPolicy:
    """
    Insert or update the tenant's policy.

    retention_days is range-checked by the gdpr_settings CHECK constraint; out-of-range values
    raise sqlalchemy.exc.IntegrityError. Caller is responsible for committing the session.
    """
    now = _utc_now()
    stmt = pg_insert(GdprSettings).values(
        chatbot_id=chatbot_id,
        retention_days=retention_days,
        enabled=enabled,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[GdprSettings.chatbot_id],
        set_={
            "retention_days": stmt.excluded.retention_days,
            "enabled": stmt.excluded.enabled,
            "updated_at": now,
        },
    ).returning(
        GdprSettings.chatbot_id,
        GdprSettings.retention_days,
        GdprSettings.enabled,
        GdprSettings.last_cleanup_run,
    )
    result = await session.execute(stmt)
    return _policy_from_row(result.one())


async def list_enabled_policies(session: AsyncSession) -> list[RetentionPolicy]:
    """All policies with enabled = true, in table order."""
    result = await session.execute(
        sa.select(
            GdprSettings.chatbot_id,
            GdprSettings.retention_days,
            GdprSettings.enabled,
            GdprSettings.last_cleanup_run,
        )
        .where(GdprSettings.enabled.is_(True))
        .order_by(GdprSettings.id)
    )
    return [_policy_from_row(row) for row in result.all()]


def _eligible(chatbot_id: str, cutoff: datetime) -> sa.ColumnElement[bool]:
    return sa.and_(Conversation.chatbot_id == chatbot_id, Conversation.created_at < cutoff)


def _legacy_message_count() -> sa.ColumnElement[int]:
    # Same counting as REDACT_LEGACY_MESSAGES_SQL: a non-array value is one message, NULL is none.
    return sa.case(
        (
            sa.func.jsonb_typeof(Conversation.conversation_data) == "array",
            sa.func.jsonb_array_length(Conversation.conversation_data),
        ),
        (Conversation.conversation_data.is_(None), 0),
        else_=1,
    )


async def preview_gdpr_cleanup(
    session: AsyncSession,
    chatbot_id: str,
    retention_days: int,
    now: datetime | None = None,
) -> CleanupPreview:
    """
    Report what execute_gdpr_cleanup would anonymize, without writing anything.

    Args:
        session: Async session (only SELECTs are issued).
        chatbot_id: Tenant.
        retention_days: Window to evaluate (need not match the stored policy).
        now: Reference time for the cutoff; defaults to current UTC time.

    Returns:
        CleanupPreview with up to PREVIEW_SAMPLE_LIMIT newest eligible conversations and totals.
    """
    cutoff = compute_cutoff_date(retention_days, now)
    eligible = _eligible(chatbot_id, cutoff)

    atomic_count = (
        sa.select(sa.func.count(ConversationMessage.id))
        .where(ConversationMessage.conversation_id == Conversation.id)
        .scalar_subquery()
    )
    sample_rows = await session.execute(
        sa.select(
            Conversation.id,
            Conversation.created_at,
            Conversation.emne,
            _legacy_message_count().label("legacy_message_count"),
            atomic_count.label("atomic_message_count"),
        )
        .where(eligible)
        .order_by(Conversation.created_at.desc())
        .limit(PREVIEW_SAMPLE_LIMIT)
    )
    sample = [
        PreviewConversation(
            id=row.id,
            created_at=row.created_at,
            emne=row.emne,
            legacy_message_count=int(row.legacy_message_count or 0),
            atomic_message_count=int(row.atomic_message_count or 0),
        )
        for row in sample_rows.all()
    ]

    eligible_ids = sa.select(Conversation.id).where(eligible).scalar_subquery()
    totals_row = (
        await session.execute(
            sa.select(
                sa.select(sa.func.count()).select_from(Conversation).where(eligible).scalar_subquery().label(
                    "conversations"
                ),
                sa.select(sa.func.coalesce(sa.func.sum(_legacy_message_count()), 0))
                .where(eligible)
                .scalar_subquery()
                .label("legacy_messages"),
                sa.select(sa.func.count(ConversationMessage.id))
                .where(ConversationMessage.conversation_id.in_(eligible_ids))
                .scalar_subquery()
                .label("atomic_messages"),
                sa.select(sa.func.count(MessageContextChunk.id))
                .where(MessageContextChunk.conversation_id.in_(eligible_ids))
                .scalar_subquery()
                .label("context_chunks"),
            )
        )
    ).one()
    totals = PreviewTotals(
        conversations=int(totals_row.conversations or 0),
        legacy_messages=int(totals_row.legacy_messages or 0),
        atomic_messages=int(totals_row.atomic_messages or 0),
        context_chunks=int(totals_row.context_chunks or 0),
    )
    return CleanupPreview(
        cutoff_date=cutoff,
        retention_days=retention_days,
        sample_conversations=sample,
        totals=totals,
    )


async def _anonymize(session: AsyncSession, chatbot_id: str, cutoff: datetime, now: datetime) -> CleanupResult:
    ids_result = await session.execute(sa.select(Conversation.id).where(_eligible(chatbot_id, cutoff)))
    conversation_ids = list(ids_result.scalars().all())
    if not conversation_ids:
        logger.debug(f"No conversations older than {cutoff.isoformat()} for chatbot {chatbot_id}")
        return CleanupResult(cutoff_date=cutoff)

    legacy_result = await session.execute(
        REDACT_LEGACY_MESSAGES_SQL,
        {
            "sentinel": REDACTION_SENTINEL,
            "redacted_at_ms": int(now.timestamp() * 1000),
            "conversation_ids": conversation_ids,
        },
    )
    legacy_count = sum(int(count or 0) for count in legacy_result.scalars().all())

    atomic_result = await session.execute(
        sa.update(ConversationMessage)
        .where(ConversationMessage.conversation_id.in_(conversation_ids))
        .values(message_text=REDACTION_SENTINEL, image_data=None)
        .returning(ConversationMessage.id)
        .execution_options(synchronize_session=False)
    )
    atomic_count = len(atomic_result.scalars().all())

    chunks_result = await session.execute(
        sa.update(MessageContextChunk)
        .where(MessageContextChunk.conversation_id.in_(conversation_ids))
        .values(chunk_content=REDACTION_SENTINEL)
        .returning(MessageContextChunk.id)
        .execution_options(synchronize_session=False)
    )
    chunks_count = len(chunks_result.scalars().all())

    await session.execute(
        sa.update(GdprSettings)
        .where(GdprSettings.chatbot_id == chatbot_id)
        .values(last_cleanup_run=now)
        .execution_options(synchronize_session=False)
    )

    result = CleanupResult(
        cutoff_date=cutoff,
        processed_conversations=len(conversation_ids),
        anonymized_legacy_messages=legacy_count,
        anonymized_atomic_messages=atomic_count,
        anonymized_context_chunks=chunks_count,
    )
    await log_audit(
        session,
        action=GDPR_CLEANUP_ACTION,
        resource_type=CHATBOT_RESOURCE,
        resource_id=chatbot_id,
        details={k: v.isoformat() if isinstance(v, datetime) else v for k, v in result.as_dict().items()},
    )
    return result


async def execute_gdpr_cleanup(
    session_factory: async_sessionmaker[AsyncSession],
    chatbot_id: str,
    retention_days: int,
    now: datetime | None = None,
) -> CleanupResult:
    """
    Anonymize every conversation of chatbot_id created before now - retention_days.

    All statements run in one transaction on one pooled connection; any failure rolls the
    whole run back and raises GdprCleanupError (cause chained). The session is closed on
    both paths.
    """
    now = now or _utc_now()
    cutoff = compute_cutoff_date(retention_days, now)
    try:
        async with session_factory() as session:
            async with session.begin():
                result = await _anonymize(session, chatbot_id, cutoff, now)
    except Exception as e:
        logger.error(f"GDPR cleanup rolled back for chatbot {chatbot_id}: {e}", exc_info=True)
        raise GdprCleanupError(chatbot_id, str(e)) from e

    if result.processed_conversations:
        logger.info(
            f"GDPR cleanup for chatbot {chatbot_id}: {result.processed_conversations} conversations, "
            f"{result.anonymized_legacy_messages} legacy messages, {result.anonymized_atomic_messages} "
            f"atomic messages, {result.anonymized_context_chunks} context chunks (cutoff {cutoff.isoformat()})"
        )
    return result


ExecuteFn = Callable[..., Awaitable[CleanupResult]]


async def run_gdpr_cleanup_all(
    session_factory: async_sessionmaker[AsyncSession],
    now: datetime | None = None,
    execute: ExecuteFn = execute_gdpr_cleanup,
) -> list[TenantCleanupOutcome]:
    """
    Run execute for every enabled tenant, sequentially and in query order.

    A tenant that raises is recorded as success=False with the error message; the batch continues.
    Failure to read the policy table propagates.
    """
    async with session_factory() as session:
        policies = await list_enabled_policies(session)

    outcomes: list[TenantCleanupOutcome] = []
    for policy in policies:
        try:
            result = await execute(session_factory, policy.chatbot_id, policy.retention_days, now=now)
            outcomes.append(TenantCleanupOutcome(chatbot_id=policy.chatbot_id, success=True, result=result))
        except Exception as e:
            logger.error(f"GDPR cleanup failed for chatbot {policy.chatbot_id}: {e}", exc_info=True)
            outcomes.append(TenantCleanupOutcome(chatbot_id=policy.chatbot_id, success=False, error=str(e)))
    return outcomes
