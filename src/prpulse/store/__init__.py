"""Store implementations."""

from .base import (
    NOTIFICATION_DELIVERED,
    NOTIFICATION_FAILED,
    NOTIFICATION_PENDING,
    StorageError,
    WatermarkStore,
)
from .sqlite_store import SQLiteWatermarkStore

__all__ = [
    "NOTIFICATION_DELIVERED",
    "NOTIFICATION_FAILED",
    "NOTIFICATION_PENDING",
    "StorageError",
    "WatermarkStore",
    "SQLiteWatermarkStore",
]
