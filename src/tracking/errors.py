"""Exception taxonomy for the cycle tracking core.

Validation errors (``InvalidSequenceError``, ``PolicyViolationError``) are
raised before any state is mutated and surface to the caller with a specific
reason.  ``DeliveryFailure`` is recorded on the notification by the dispatch
sweep and never propagates past it.
"""

from __future__ import annotations


class TrackingError(Exception):
    """Base class for all tracking-core errors."""


class ValidationError(TrackingError):
    """A write was rejected. ``reason`` is safe to show to the user."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class InvalidSequenceError(ValidationError):
    """Timestamp ordering violated, or an event applied out of order."""


class PolicyViolationError(ValidationError):
    """A halachic minimum (niddah days, seven clean days) was not met."""


class ConflictError(TrackingError):
    """A concurrent update won the race for the same cycle record."""


class NotFoundError(TrackingError):
    """Unknown cycle, notification, or user id."""


class StorageError(TrackingError):
    """The backing store failed. Sweeps end the current tick on this."""


class DeliveryFailure(TrackingError):
    """The delivery service could not send a notification."""


class NotificationStateError(TrackingError):
    """A notification was asked to leave a terminal state."""
