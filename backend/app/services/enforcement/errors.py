"""
Enforcement pipeline exceptions.

Contention on the consequence uniqueness constraint is NOT an exception
here: the decision engine treats it as "already handled" and moves on.
"""


class EnforcementError(Exception):
    """Base class for enforcement pipeline errors."""


class InvalidTransitionError(EnforcementError):
    """A lifecycle transition that the state machine does not allow."""


class UnitNotFailedError(EnforcementError):
    """The decision engine was handed a unit that is not FAILED."""


class RecordNotFoundError(EnforcementError):
    """Unknown record, or one that belongs to a different owner."""


class CollaboratorError(EnforcementError):
    """An external collaborator refused or could not complete a call."""

    retryable = False

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class RetryableCollaboratorError(CollaboratorError):
    """Timeout, connection failure, 429 or 5xx. Safe to retry with the same key."""

    retryable = True


class PermanentCollaboratorError(CollaboratorError):
    """Bad destination, revoked token, 4xx. Never retried."""

    retryable = False


class NotificationNotShownError(EnforcementError):
    """Acknowledging a record that no session has shown yet."""
