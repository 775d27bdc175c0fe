"""
Legacy message array (conversations.conversation_data): element shapes and redaction.

Recognized element (JSON object):
  {"text": str, "isUser": bool, "timestamp": epoch ms, "image": data URL | null, "imageData": ..., ...}
Keys outside text/image/imageData are preserved by redaction (isUser, timestamp, flow keys, ...).

Anything else (strings, numbers, nested arrays, objects with mistyped text/isUser) is an
UnrecognizedElement. Redaction rewrites objects in place and replaces non-objects with a
placeholder object so that no free text survives. A conversation_data value that is not an
array at all is redacted the same way: a bare object as one message, a scalar as a placeholder.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import bindparam, text
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.types import BigInteger, String

from chat_retention.constants import REDACTION_SENTINEL

TEXT_KEY = "text"
IS_USER_KEY = "isUser"
TIMESTAMP_KEY = "timestamp"
IMAGE_KEY = "image"
IMAGE_DATA_KEY = "imageData"


@dataclass(frozen=True)
class LegacyMessage:
    """One well-formed element of the legacy array."""

    raw: dict[str, Any]

    @property
    def text(self) -> str | None:
        return self.raw.get(TEXT_KEY)

    @property
    def is_user(self) -> bool:
        return bool(self.raw.get(IS_USER_KEY, False))

    @property
    def timestamp(self) -> Any:
        return self.raw.get(TIMESTAMP_KEY)

    @property
    def has_image(self) -> bool:
        return self.raw.get(IMAGE_KEY) is not None or IMAGE_DATA_KEY in self.raw

    @property
    def is_redacted(self) -> bool:
        return self.text == REDACTION_SENTINEL and not self.has_image


@dataclass(frozen=True)
class UnrecognizedElement:
    """Element whose shape is not a legacy message; kept verbatim on read."""

    raw: Any

    @property
    def is_redacted(self) -> bool:
        return False


def parse_legacy_element(raw: Any) -> LegacyMessage | UnrecognizedElement:
    """Classify one array element. Never raises; unknown shapes come back as UnrecognizedElement."""
    if not isinstance(raw, dict):
        return UnrecognizedElement(raw)
    if not isinstance(raw.get(TEXT_KEY), (str, type(None))):
        return UnrecognizedElement(raw)
    if not isinstance(raw.get(IS_USER_KEY), (bool, type(None))):
        return UnrecognizedElement(raw)
    return LegacyMessage(raw)


def parse_conversation_data(data: Any) -> list[LegacyMessage | UnrecognizedElement]:
    """
    Parse a conversation_data value.

    Returns:
        Parsed elements in array order; empty list for NULL.

    Raises:
        ValueError: if data is neither NULL nor a JSON array.
    """
    if data is None:
        return []
    if not isinstance(data, list):
        raise ValueError(f"conversation_data must be a JSON array, got {type(data).__name__}")
    return [parse_legacy_element(item) for item in data]


# Set-based rewrite of every legacy value. Arrays: each element rewritten, order kept via WITH
# ORDINALITY. Objects (an array element or a bare conversation_data object) keep all keys except
# text/image/imageData; any other value becomes a placeholder stamped with :redacted_at_ms.
# Returns the number of messages per rewritten conversation (a bare object or scalar counts as one).
REDACT_LEGACY_MESSAGES_SQL = text(
    """
    UPDATE conversations
    SET conversation_data = CASE jsonb_typeof(conversations.conversation_data)
        WHEN 'array' THEN COALESCE((
            SELECT jsonb_agg(
                CASE
                    WHEN jsonb_typeof(elem.message) = 'object' THEN
                        (elem.message || jsonb_build_object('text', CAST(:sentinel AS text), 'image', NULL)) - 'imageData'
                    ELSE
                        jsonb_build_object(
                            'text', CAST(:sentinel AS text),
                            'isUser', false,
                            'timestamp', CAST(:redacted_at_ms AS bigint)
                        )
                END
                ORDER BY elem.ordinality
            )
            FROM jsonb_array_elements(
                CASE WHEN jsonb_typeof(conversations.conversation_data) = 'array'
                     THEN conversations.conversation_data ELSE CAST('[]' AS jsonb) END
            ) WITH ORDINALITY AS elem(message, ordinality)
        ), CAST('[]' AS jsonb))
        WHEN 'object' THEN
            (conversations.conversation_data
                || jsonb_build_object('text', CAST(:sentinel AS text), 'image', NULL)) - 'imageData'
        ELSE
            jsonb_build_object(
                'text', CAST(:sentinel AS text),
                'isUser', false,
                'timestamp', CAST(:redacted_at_ms AS bigint)
            )
    END
    WHERE conversations.id = ANY(:conversation_ids)
      AND conversations.conversation_data IS NOT NULL
    RETURNING CASE jsonb_typeof(conversations.conversation_data)
        WHEN 'array' THEN jsonb_array_length(conversations.conversation_data)
        ELSE 1
    END AS message_count
    """
).bindparams(
    bindparam("sentinel", type_=String),
    bindparam("redacted_at_ms", type_=BigInteger),
    bindparam("conversation_ids", type_=ARRAY(BigInteger)),
)
