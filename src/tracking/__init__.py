"""MikvahCal cycle tracking core: public API.

Modules:

    state_machine   cycle status derivation and event validation
    predictor       veset / onah predictions from the cycle history
    notifications   reminder scheduling and the dispatch sweep
    retention       purge of expired data
    runner          timers and run-locks for the two sweeps
    service         orchestration with optimistic concurrency

Usage::

    from src.tracking import apply_event, derive_status, predict_next_onsets

    result = apply_event(record, "hefsek_tahara", ts, minimum_niddah_days=5, now=now)
    print(result.status)            # CycleStatus.niddah
"""

from __future__ import annotations

from src.tracking.errors import (
    ConflictError,
    DeliveryFailure,
    InvalidSequenceError,
    NotFoundError,
    PolicyViolationError,
    StorageError,
    TrackingError,
    ValidationError,
)
from src.tracking.predictor import VesetPrediction, predict_next_onsets
from src.tracking.records import (
    CycleEventType,
    CycleRecord,
    CycleStatus,
    Notification,
    NotificationStatus,
    NotificationType,
    UserPreferences,
)
from src.tracking.state_machine import apply_event, derive_status

__all__ = [
    "apply_event",
    "derive_status",
    "predict_next_onsets",
    "VesetPrediction",
    "CycleEventType",
    "CycleRecord",
    "CycleStatus",
    "Notification",
    "NotificationStatus",
    "NotificationType",
    "UserPreferences",
    "TrackingError",
    "ValidationError",
    "InvalidSequenceError",
    "PolicyViolationError",
    "ConflictError",
    "NotFoundError",
    "StorageError",
    "DeliveryFailure",
]
