"""Unit tests for GDPR retention: cutoff, policy store, preview, executor and batch run (mocked sessions)."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError

from chat_retention.constants import REDACTION_SENTINEL
from chat_retention.errors import GdprCleanupError
from chat_retention.gdpr import (
    CleanupResult,
    RetentionPolicy,
    TenantCleanupOutcome,
    _legacy_message_count,
    compute_cutoff_date,
    execute_gdpr_cleanup,
    get_gdpr_settings,
    list_enabled_policies,
    preview_gdpr_cleanup,
    run_gdpr_cleanup_all,
    save_gdpr_settings,
)
from chat_retention.legacy_messages import REDACT_LEGACY_MESSAGES_SQL
from tests.conftest import make_factory, make_result, make_session

NOW = datetime(2026, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


# ---- cutoff ----
@pytest.mark.parametrize("days", [1, 30, 90, 365, 3650])
def test_cutoff_is_now_minus_days(days):
    assert compute_cutoff_date(days, NOW) == NOW - timedelta(days=days)


def test_cutoff_is_deterministic():
    assert compute_cutoff_date(30, NOW) == compute_cutoff_date(30, NOW)


def test_cutoff_defaults_to_current_utc_time():
    before = datetime.now(timezone.utc)
    cutoff = compute_cutoff_date(1)
    after = datetime.now(timezone.utc)
    assert before - timedelta(days=1) <= cutoff <= after - timedelta(days=1)
    assert cutoff.tzinfo is not None


# ---- policy store ----
@pytest.mark.asyncio
async def test_get_settings_returns_default_when_missing():
    session = make_session([make_result(one_or_none=None)])
    policy = await get_gdpr_settings(session, "acme")
    assert policy == RetentionPolicy(chatbot_id="acme", retention_days=90, enabled=False, last_cleanup_run=None)


@pytest.mark.asyncio
async def test_get_settings_returns_stored_row():
    row = SimpleNamespace(chatbot_id="acme", retention_days=30, enabled=True, last_cleanup_run=NOW)
    session = make_session([make_result(one_or_none=row)])
    policy = await get_gdpr_settings(session, "acme")
    assert policy.retention_days == 30
    assert policy.enabled is True
    assert policy.last_cleanup_run == NOW


@pytest.mark.asyncio
async def test_save_settings_upserts_by_chatbot_id():
    row = SimpleNamespace(chatbot_id="acme", retention_days=30, enabled=True, last_cleanup_run=None)
    session = make_session([make_result(one=row)])
    policy = await save_gdpr_settings(session, "acme", 30, True)

    assert policy == RetentionPolicy(chatbot_id="acme", retention_days=30, enabled=True)
    stmt = session.execute.await_args.args[0]
    compiled = str(stmt.compile(dialect=postgresql.dialect()))
    assert "INSERT INTO gdpr_settings" in compiled
    assert "ON CONFLICT (chatbot_id) DO UPDATE" in compiled
    assert "RETURNING" in compiled
    session.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_save_settings_propagates_constraint_error():
    error = IntegrityError("INSERT INTO gdpr_settings", {}, Exception("violates check constraint"))
    session = make_session([error])
    with pytest.raises(IntegrityError):
        await save_gdpr_settings(session, "acme", 0, True)


@pytest.mark.asyncio
async def test_list_enabled_policies():
    rows = [
        SimpleNamespace(chatbot_id="a", retention_days=30, enabled=True, last_cleanup_run=None),
        SimpleNamespace(chatbot_id="b", retention_days=60, enabled=True, last_cleanup_run=NOW),
    ]
    session = make_session([make_result(rows=rows)])
    policies = await list_enabled_policies(session)
    assert [p.chatbot_id for p in policies] == ["a", "b"]
    sql = str(session.execute.await_args.args[0].compile(dialect=postgresql.dialect()))
    assert "gdpr_settings.enabled IS true" in sql


# ---- preview ----
def _preview_session():
    sample = [
        SimpleNamespace(id=2, created_at=NOW - timedelta(days=40), emne="Order", legacy_message_count=3,
                        atomic_message_count=3),
        SimpleNamespace(id=1, created_at=NOW - timedelta(days=50), emne=None, legacy_message_count=None,
                        atomic_message_count=0),
    ]
    totals = SimpleNamespace(conversations=2, legacy_messages=3, atomic_messages=3, context_chunks=5)
    return make_session([make_result(rows=sample), make_result(one=totals)])


@pytest.mark.asyncio
async def test_preview_reports_sample_and_totals():
    session = _preview_session()
    preview = await preview_gdpr_cleanup(session, "acme", 30, now=NOW)

    assert preview.cutoff_date == NOW - timedelta(days=30)
    assert preview.retention_days == 30
    assert [c.id for c in preview.sample_conversations] == [2, 1]
    assert preview.sample_conversations[1].legacy_message_count == 0
    assert preview.totals.conversations == 2
    assert preview.totals.context_chunks == 5


@pytest.mark.asyncio
async def test_preview_only_selects():
    session = _preview_session()
    await preview_gdpr_cleanup(session, "acme", 30, now=NOW)

    statements = [call.args[0] for call in session.execute.await_args_list]
    assert len(statements) == 2
    assert all(isinstance(stmt, sa.Select) for stmt in statements)
    session.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_preview_sample_is_newest_first_and_capped():
    session = _preview_session()
    await preview_gdpr_cleanup(session, "acme", 30, now=NOW)
    sample_sql = str(session.execute.await_args_list[0].args[0])
    assert "ORDER BY conversations.created_at DESC" in sample_sql
    assert "LIMIT" in sample_sql
    assert session.execute.await_args_list[0].args[0]._limit == 100


@pytest.mark.asyncio
async def test_preview_twice_gives_same_totals():
    first = await preview_gdpr_cleanup(_preview_session(), "acme", 30, now=NOW)
    second = await preview_gdpr_cleanup(_preview_session(), "acme", 30, now=NOW)
    assert first.totals == second.totals


# ---- executor ----
def _execute_results(ids, legacy_counts, atomic_ids, chunk_ids):
    return [
        make_result(scalars=ids),
        make_result(scalars=legacy_counts),
        make_result(scalars=atomic_ids),
        make_result(scalars=chunk_ids),
        make_result(),  # gdpr_settings.last_cleanup_run
        make_result(),  # audit log
    ]


@pytest.mark.asyncio
async def test_execute_without_eligible_conversations_is_noop():
    session = make_session([make_result(scalars=[])])
    result = await execute_gdpr_cleanup(make_factory(session), "acme", 30, now=NOW)

    assert result == CleanupResult(cutoff_date=NOW - timedelta(days=30))
    assert session.execute.await_count == 1
    exit_args = session.begin.return_value.__aexit__.await_args.args
    assert exit_args[0] is None  # committed, no exception


@pytest.mark.asyncio
async def test_execute_anonymizes_all_three_tables():
    session = make_session(_execute_results([7, 9], [1, 4], [11, 12, 13], [21]))
    result = await execute_gdpr_cleanup(make_factory(session), "acme", 30, now=NOW)

    assert result.processed_conversations == 2
    assert result.anonymized_legacy_messages == 5
    assert result.anonymized_atomic_messages == 3
    assert result.anonymized_context_chunks == 1
    assert result.cutoff_date == NOW - timedelta(days=30)

    calls = session.execute.await_args_list
    assert len(calls) == 6
    select_sql = str(calls[0].args[0])
    assert "conversations.created_at <" in select_sql
    assert "<=" not in select_sql

    assert calls[1].args[0] is REDACT_LEGACY_MESSAGES_SQL
    assert calls[1].args[1]["sentinel"] == REDACTION_SENTINEL
    assert calls[1].args[1]["conversation_ids"] == [7, 9]
    assert calls[1].args[1]["redacted_at_ms"] == int(NOW.timestamp() * 1000)

    atomic_params = calls[2].args[0].compile().params
    assert atomic_params["message_text"] == REDACTION_SENTINEL
    assert atomic_params["image_data"] is None
    assert calls[2].args[0].table.name == "conversation_messages"

    assert calls[3].args[0].table.name == "message_context_chunks"
    assert calls[3].args[0].compile().params["chunk_content"] == REDACTION_SENTINEL

    settings_stmt = calls[4].args[0]
    assert settings_stmt.table.name == "gdpr_settings"
    assert settings_stmt.compile().params["last_cleanup_run"] == NOW

    assert calls[5].args[0].table.name == "audit_logs"


@pytest.mark.asyncio
async def test_execute_runs_in_one_transaction_on_one_session():
    session = make_session(_execute_results([7], [1], [], []))
    factory = make_factory(session)
    await execute_gdpr_cleanup(factory, "acme", 30, now=NOW)

    factory.assert_called_once_with()
    session.begin.assert_called_once_with()
    session.__aexit__.assert_awaited_once()  # session closed / connection released


@pytest.mark.asyncio
async def test_execute_failure_rolls_back_whole_run():
    error = IntegrityError("UPDATE conversation_messages", {}, Exception("simulated constraint violation"))
    session = make_session([make_result(scalars=[7]), make_result(scalars=[1]), error])

    with pytest.raises(GdprCleanupError) as exc_info:
        await execute_gdpr_cleanup(make_factory(session), "acme", 30, now=NOW)

    assert exc_info.value.chatbot_id == "acme"
    assert exc_info.value.__cause__ is error
    # the transaction context saw the exception, so the legacy update is rolled back with it
    exit_args = session.begin.return_value.__aexit__.await_args.args
    assert exit_args[0] is IntegrityError
    assert session.execute.await_count == 3
    session.__aexit__.assert_awaited_once()


@pytest.mark.asyncio
async def test_execute_wraps_non_database_errors():
    error = RuntimeError("connection dropped mid-run")
    session = make_session([make_result(scalars=[7]), error])

    with pytest.raises(GdprCleanupError) as exc_info:
        await execute_gdpr_cleanup(make_factory(session), "acme", 30, now=NOW)

    assert exc_info.value.__cause__ is error
    assert session.begin.return_value.__aexit__.await_args.args[0] is RuntimeError


def test_preview_counts_non_array_legacy_value_as_one_message():
    sql = str(_legacy_message_count().compile(dialect=postgresql.dialect()))
    assert "jsonb_array_length(conversations.conversation_data)" in sql
    assert "conversations.conversation_data IS NULL" in sql
    assert "ELSE" in sql


@pytest.mark.asyncio
async def test_execute_twice_keeps_sentinel_stable():
    first = make_session(_execute_results([7], [1], [3], []))
    second = make_session(_execute_results([7], [1], [3], []))
    await execute_gdpr_cleanup(make_factory(first), "acme", 30, now=NOW)
    await execute_gdpr_cleanup(make_factory(second), "acme", 30, now=NOW)

    for session in (first, second):
        assert session.execute.await_args_list[1].args[1]["sentinel"] == REDACTION_SENTINEL


# ---- batch ----
@pytest.mark.asyncio
async def test_run_all_continues_after_tenant_failure():
    policies = [
        SimpleNamespace(chatbot_id="a", retention_days=30, enabled=True, last_cleanup_run=None),
        SimpleNamespace(chatbot_id="b", retention_days=60, enabled=True, last_cleanup_run=None),
        SimpleNamespace(chatbot_id="c", retention_days=90, enabled=True, last_cleanup_run=None),
    ]
    factory = make_factory(make_session([make_result(rows=policies)]))
    calls = []

    async def fake_execute(session_factory, chatbot_id, retention_days, now=None):
        calls.append((chatbot_id, retention_days))
        if chatbot_id == "b":
            raise GdprCleanupError("b", "deadlock detected")
        return CleanupResult(
            cutoff_date=compute_cutoff_date(retention_days, now),
            processed_conversations=2,
            anonymized_legacy_messages=4,
        )

    outcomes = await run_gdpr_cleanup_all(factory, now=NOW, execute=fake_execute)

    assert calls == [("a", 30), ("b", 60), ("c", 90)]
    assert [o.chatbot_id for o in outcomes] == ["a", "b", "c"]
    assert [o.success for o in outcomes] == [True, False, True]
    assert outcomes[0].result.processed_conversations == 2
    assert outcomes[2].result.anonymized_legacy_messages == 4
    assert "deadlock detected" in outcomes[1].error
    assert outcomes[1].result is None


@pytest.mark.asyncio
async def test_run_all_with_no_enabled_tenants():
    factory = make_factory(make_session([make_result(rows=[])]))
    assert await run_gdpr_cleanup_all(factory, now=NOW) == []


def test_outcome_as_dict_flattens_result():
    ok = TenantCleanupOutcome(
        chatbot_id="a", success=True, result=CleanupResult(cutoff_date=NOW, processed_conversations=1)
    )
    failed = TenantCleanupOutcome(chatbot_id="b", success=False, error="boom")
    assert ok.as_dict()["processed_conversations"] == 1
    assert ok.as_dict()["chatbot_id"] == "a"
    assert failed.as_dict() == {"chatbot_id": "b", "success": False, "error": "boom"}
