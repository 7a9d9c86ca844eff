class MessagingError(Exception):
    """Base class for direct-messaging failures surfaced to callers."""


class InvalidParticipants(MessagingError, ValueError):
    pass


class ParticipantNotFound(MessagingError, LookupError):

    def __init__(self, user_id: str) -> None:
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class EmptyMessage(MessagingError, ValueError):

    def __init__(self) -> None:
        super().__init__("Message content cannot be empty")


class DeliveryFailed(MessagingError):
    """The sender's own mailbox write failed; nothing was queued."""
