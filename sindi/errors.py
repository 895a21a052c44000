"""Exception types shared across the chat pipeline."""
from __future__ import annotations


class SindiError(Exception):
    """Base class for errors raised by this package."""


class PropertyIndexError(SindiError):
    """The property index returned a non-success response or was unreachable."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamModelError(SindiError):
    """The generation call failed before producing any text."""


class InvalidConversationId(SindiError):
    pass


class ConversationNotFound(SindiError):
    pass


class ConversationConflict(SindiError):
    """Optimistic version check failed on a whole-conversation update."""

    def __init__(
        self,
        conversation_id: str,
        expected: int | None,
        actual: int | None,
        reason: str | None = None,
    ):
        super().__init__(
            reason or f"Conversation {conversation_id} is at version {actual}, expected {expected}"
        )
        self.conversation_id = conversation_id
        self.expected = expected
        self.actual = actual
