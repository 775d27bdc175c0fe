"""Read access to a conversation's messages in both representations."""

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from chat_retention.errors import ConversationNotFoundError
from chat_retention.legacy_messages import LegacyMessage, UnrecognizedElement, parse_conversation_data
from chat_retention.models import Conversation, ConversationMessage


async def get_conversation_messages(
    session: AsyncSession, conversation_id: int
) -> list[LegacyMessage | UnrecognizedElement]:
    """Load and validate the legacy message array of one conversation."""
    result = await session.execute(
        sa.select(Conversation.conversation_data).where(Conversation.id == conversation_id)
    )
    row = result.one_or_none()
    if row is None:
        raise ConversationNotFoundError(f"conversation {conversation_id} not found")
    return parse_conversation_data(row.conversation_data)


async def get_atomic_messages(session: AsyncSession, conversation_id: int) -> list[ConversationMessage]:
    """Atomic message rows of one conversation ordered by sequence_number."""
    result = await session.execute(
        sa.select(ConversationMessage)
        .where(ConversationMessage.conversation_id == conversation_id)
        .order_by(ConversationMessage.sequence_number)
    )
    return list(result.scalars().all())
