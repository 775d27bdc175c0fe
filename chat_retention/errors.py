"""Exceptions raised by retention cleanup and the Freshdesk ticket queue."""


class ChatRetentionError(Exception):
    """Base class for errors raised by this package."""


class GdprCleanupError(ChatRetentionError):
    """A tenant's cleanup transaction failed and was rolled back."""

    def __init__(self, chatbot_id: str, message: str):
        super().__init__(f"GDPR cleanup failed for chatbot {chatbot_id}: {message}")
        self.chatbot_id = chatbot_id
        self.reason = message


class FreshdeskError(ChatRetentionError):
    """Freshdesk API returned an error or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ConversationNotFoundError(ChatRetentionError):
    """No conversation with the requested id."""
