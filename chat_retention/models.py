"""
SQLAlchemy models: conversations, conversation_messages, message_context_chunks.

- conversations: legacy representation, whole transcript in conversation_data (JSONB array).
- conversation_messages: atomic representation, one row per message.
- message_context_chunks: retrieval context attached to a message of a conversation.

Retention cleanup redacts content in place; rows and ids are never removed.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chat_retention.base import Base


def _utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


class Conversation(Base):
    """
    One chatbot conversation owned by a tenant (chatbot_id).

    conversation_data holds the legacy message array: [{"text", "isUser", "timestamp", ...}].
    """

    __tablename__ = "conversations"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    chatbot_id: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    emne: Mapped[str | None] = mapped_column(String(255), nullable=True)  # topic label
    conversation_data: Mapped[list[Any] | None] = mapped_column(JSONB(none_as_null=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utc_now)

    messages = relationship("ConversationMessage", back_populates="conversation", cascade="all, delete-orphan")
    context_chunks = relationship("MessageContextChunk", back_populates="conversation", cascade="all, delete-orphan")

    __table_args__ = (Index("ix_conversations_chatbot_id_created_at", "chatbot_id", "created_at"),)

    def __repr__(self) -> str:
        return f"<Conversation id={self.id} chatbot_id={self.chatbot_id}>"


class ConversationMessage(Base):
    """Single message of a conversation (atomic representation)."""

    __tablename__ = "conversation_messages"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    is_user: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    message_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_data: Mapped[str | None] = mapped_column(Text, nullable=True)  # base64 data URL
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utc_now)

    conversation = relationship("Conversation", back_populates="messages")

    __table_args__ = (Index("ix_conversation_messages_conversation_id", "conversation_id", "sequence_number"),)

    def __repr__(self) -> str:
        return f"<ConversationMessage id={self.id} seq={self.sequence_number}>"


class MessageContextChunk(Base):
    """Context chunk used to answer a message; message_index points into the legacy array."""

    __tablename__ = "message_context_chunks"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    message_index: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_content: Mapped[str] = mapped_column(Text, nullable=False)
    chunk_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)  # source, title, page
    similarity_score: Mapped[Decimal | None] = mapped_column(Numeric(5, 4), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utc_now)

    conversation = relationship("Conversation", back_populates="context_chunks")

    __table_args__ = (Index("ix_message_context_chunks_conversation_message", "conversation_id", "message_index"),)
