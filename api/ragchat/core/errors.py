"""
Error taxonomy for the chat pipeline.

Every failure the pipeline distinguishes has its own exception type so the
dispatcher can decide between a typed client event, a best-effort
INTERNAL_SERVER_ERROR notification, or silence (connection gone).
"""


class RagChatError(Exception):
    """Base class for all service errors."""


class ThreadNotFoundError(RagChatError):
    """No thread metadata matches the (user, thread) pair."""

    def __init__(self, user_id: str, thread_id: str) -> None:
        super().__init__(f"Thread {thread_id} not found for user {user_id}")
        self.user_id = user_id
        self.thread_id = thread_id


class DuplicateThreadError(RagChatError):
    """More than one metadata record matches a (user, thread) pair.

    This is a data-integrity fault. It is never retried.
    """

    def __init__(self, user_id: str, thread_id: str, count: int) -> None:
        super().__init__(
            f"Duplicate thread ID {thread_id} for user {user_id} ({count} metadata records)"
        )
        self.user_id = user_id
        self.thread_id = thread_id
        self.count = count


class ConnectionGoneError(RagChatError):
    """The target connection no longer exists. Terminal, never retried."""

    def __init__(self, connection_id: str) -> None:
        super().__init__(f"Connection {connection_id} is gone")
        self.connection_id = connection_id


class DeliveryError(RagChatError):
    """A transient failure while pushing an event to a live connection."""


class GenerationIncompleteError(RagChatError):
    """The generation stream ended without an explicit stop event."""


class RetrievalError(RagChatError):
    """The search capability returned a hit that cannot be normalized."""


class UnknownConnectionError(RagChatError):
    """Input arrived for a connection with no registered user."""

    def __init__(self, connection_id: str) -> None:
        super().__init__(f"No user registered for connection {connection_id}")
        self.connection_id = connection_id


class InvalidMessageError(RagChatError):
    """An inbound client message could not be parsed."""


class AuthenticationError(RagChatError):
    """A bearer credential could not be verified."""
