"""
chat-retention: GDPR retention and background jobs for a multi-tenant chatbot backend.

Database (PostgreSQL, SQLAlchemy asyncio + asyncpg):
  Base, Conversation, ConversationMessage, MessageContextChunk, GdprSettings, AuditLog,
  FreshdeskTicketQueue, TicketStatus
  set_database_url, get_engine, get_session_factory, dispose_engine, init_db, session_scope, log_audit

GDPR retention:
  compute_cutoff_date, get_gdpr_settings, save_gdpr_settings, list_enabled_policies,
  preview_gdpr_cleanup, execute_gdpr_cleanup, run_gdpr_cleanup_all
  RetentionPolicy, CleanupPreview, CleanupResult, TenantCleanupOutcome
  parse_conversation_data, get_conversation_messages

Background jobs:
  RetentionScheduler, TicketQueuePoller, FreshdeskQueueService, FreshdeskClient, BackgroundServices
"""

from chat_retention.base import Base
from chat_retention.config import AppConfig, config_from_env, configure_logging, load_config
from chat_retention.constants import REDACTION_SENTINEL, validate_retention_days
from chat_retention.conversations import get_atomic_messages, get_conversation_messages
from chat_retention.db import (
    dispose_engine,
    get_engine,
    get_session_factory,
    init_db,
    log_audit,
    session_scope,
    set_database_url,
)
from chat_retention.errors import ChatRetentionError, ConversationNotFoundError, FreshdeskError, GdprCleanupError
from chat_retention.freshdesk import FreshdeskClient
from chat_retention.gdpr import (
    CleanupPreview,
    CleanupResult,
    RetentionPolicy,
    TenantCleanupOutcome,
    compute_cutoff_date,
    execute_gdpr_cleanup,
    get_gdpr_settings,
    list_enabled_policies,
    preview_gdpr_cleanup,
    run_gdpr_cleanup_all,
    save_gdpr_settings,
)
from chat_retention.legacy_messages import LegacyMessage, UnrecognizedElement, parse_conversation_data
from chat_retention.models import Conversation, ConversationMessage, MessageContextChunk
from chat_retention.models_audit import AuditLog
from chat_retention.models_gdpr import GdprSettings
from chat_retention.models_queue import FreshdeskTicketQueue, TicketStatus
from chat_retention.scheduler import RetentionScheduler, TicketQueuePoller
from chat_retention.service import BackgroundServices
from chat_retention.ticket_queue import FreshdeskQueueService

__all__ = [
    "AppConfig",
    "AuditLog",
    "BackgroundServices",
    "Base",
    "ChatRetentionError",
    "CleanupPreview",
    "CleanupResult",
    "Conversation",
    "ConversationMessage",
    "ConversationNotFoundError",
    "FreshdeskClient",
    "FreshdeskError",
    "FreshdeskQueueService",
    "FreshdeskTicketQueue",
    "GdprCleanupError",
    "GdprSettings",
    "LegacyMessage",
    "MessageContextChunk",
    "REDACTION_SENTINEL",
    "RetentionPolicy",
    "RetentionScheduler",
    "TenantCleanupOutcome",
    "TicketQueuePoller",
    "TicketStatus",
    "UnrecognizedElement",
    "compute_cutoff_date",
    "config_from_env",
    "configure_logging",
    "dispose_engine",
    "execute_gdpr_cleanup",
    "get_atomic_messages",
    "get_conversation_messages",
    "get_engine",
    "get_gdpr_settings",
    "get_session_factory",
    "init_db",
    "list_enabled_policies",
    "load_config",
    "log_audit",
    "parse_conversation_data",
    "preview_gdpr_cleanup",
    "run_gdpr_cleanup_all",
    "save_gdpr_settings",
    "session_scope",
    "set_database_url",
    "validate_retention_days",
]
