"""Error taxonomy shared by the backend and the sync client.

Learn: Each class maps to one user-facing behaviour:
- ChannelConnectionError → connectivity indicator only, retried with backoff
- ConflictError → "already reviewed", never retried automatically
- ValidationError → shown inline next to the input, never retried
- NotificationDeliveryError → logged at the fan-out boundary, never raised
  past it
The HTTP layer maps these to status codes and the RPC client maps the
status codes back, so callers catch the same classes on both sides.
"""

ALREADY_REVIEWED_MESSAGE = "This version was already reviewed by someone else."


class ReviewSyncError(Exception):
    """Base class for all reviewsync errors."""


class ChannelConnectionError(ReviewSyncError, ConnectionError):
    """The change stream handshake did not complete in time, or the link dropped."""


class ConflictError(ReviewSyncError):
    """The version is not in a state that allows the requested transition."""

    def __init__(self, message: str = ALREADY_REVIEWED_MESSAGE):
        super().__init__(message)


class ActionInProgressError(ConflictError):
    """Another review action for the same version is still in flight."""

    def __init__(self, version_id: str):
        super().__init__(f"A review action for version {version_id} is already in progress")
        self.version_id = version_id


class ValidationError(ReviewSyncError):
    """Input rejected before any state change (e.g. blank feedback)."""


class NotFoundError(ReviewSyncError):
    """The referenced content item, version, comment or notification does not exist."""


class NotificationDeliveryError(ReviewSyncError):
    """Notification records could not be written. Never rolls back a workflow transition."""


class RequestTimeoutError(ReviewSyncError):
    """A workflow RPC did not answer within the request timeout."""


class ForbiddenError(ReviewSyncError):
    """The actor may not change this record (e.g. editing someone else's comment)."""


class ServiceUnavailableError(ReviewSyncError, ConnectionError):
    """The backend could not be reached or answered with a server error."""
