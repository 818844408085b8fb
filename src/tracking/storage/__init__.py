"""Store implementations for the tracking core."""

from __future__ import annotations

from src.tracking.storage.base import CycleFilter, SystemClock
from src.tracking.storage.memory import (
    InMemoryActivityLog,
    InMemoryCycleStore,
    InMemoryNotificationStore,
    InMemoryProfileReader,
)

__all__ = [
    "CycleFilter",
    "SystemClock",
    "InMemoryActivityLog",
    "InMemoryCycleStore",
    "InMemoryNotificationStore",
    "InMemoryProfileReader",
]
