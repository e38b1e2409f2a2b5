"""Core modules for HomePulse."""

from homepulse.core.entities import DeviceRecord, EngineState, UsageSnapshot, UserActionEvent
from homepulse.core.errors import (
    EngineError,
    InsufficientDataError,
    LockTimeoutError,
    NoActiveUserError,
    PersistenceError,
    ValidationError,
)
from homepulse.core.snapshot_store import SnapshotStore

__all__ = [
    "DeviceRecord",
    "EngineState",
    "UsageSnapshot",
    "UserActionEvent",
    "EngineError",
    "InsufficientDataError",
    "LockTimeoutError",
    "NoActiveUserError",
    "PersistenceError",
    "ValidationError",
    "SnapshotStore",
]
