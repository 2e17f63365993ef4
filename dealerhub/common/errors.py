"""Exception taxonomy shared by the notification components."""


class NotificationError(Exception):
    """Base exception for notification errors."""

    pass


class AuthError(NotificationError):
    """Credential missing, invalid, or not allowed for the requested entry point."""

    pass


class ForbiddenError(NotificationError):
    """Principal is authenticated but does not own the resource."""

    pass


class NotFoundError(NotificationError):
    """Requested record does not exist."""

    def __init__(self, resource: str) -> None:
        super().__init__(f"{resource} not found")
        self.resource = resource


class InboxWriteError(NotificationError):
    """Inbox records could not be persisted; nothing was delivered."""

    pass


class DeliveryError(NotificationError):
    """Push provider call failed for a whole batch."""

    def __init__(self, message: str, provider: str, error_code: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.error_code = error_code
