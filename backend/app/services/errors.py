"""Messaging error taxonomy."""


class MessagingError(RuntimeError):
    """Base class for messaging failures."""


class Unauthorized(MessagingError):
    """Raised when a call carries no valid authenticated identity."""


class Forbidden(MessagingError):
    """Raised when the caller is not a participant of the target conversation."""


class NotFound(MessagingError):
    """Raised when a conversation or message does not exist."""


class TransientStoreError(MessagingError):
    """Raised when a store call fails for connectivity reasons; safe to retry."""


class SubscriptionError(MessagingError):
    """Raised when a realtime channel cannot be established or is lost."""
