from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator

from prpulse.models import ActivityKind, Watermark

BASELINE_STATE_KEY = "baseline_established"
CREDENTIAL_STATE_KEY = "credential_fingerprint"

NOTIFICATION_PENDING = "pending"
NOTIFICATION_DELIVERED = "delivered"
NOTIFICATION_FAILED = "failed"


class StorageError(RuntimeError):
    """Raised when watermark or engine state cannot be read or written."""


class WatermarkStore(ABC):
    """Durable per-pull-request watermarks plus a little engine-wide state.

    ``set_watermark`` is monotonic: a timestamp that is not strictly newer than
    the stored one is ignored (logged at DEBUG) and the call returns ``False``.
    """

    def __init__(self) -> None:
        self._locks_guard = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}

    @abstractmethod
    def init_db(self) -> None:
        """Create any required schema."""

    @abstractmethod
    def get_watermark(self, key: str) -> Watermark:
        """Return the stored watermark; fields never written are ``None``."""

    @abstractmethod
    def set_watermark(self, key: str, kind: ActivityKind, seen_at: datetime) -> bool:
        """Advance one field of a watermark; return whether it moved forward."""

    @abstractmethod
    def list_watermarks(self) -> dict[str, Watermark]:
        """Return every stored watermark keyed by watermark key."""

    @abstractmethod
    def get_state(self, name: str) -> str | None:
        """Return an engine state value, or None when unset."""

    @abstractmethod
    def set_state(self, name: str, value: str | None) -> None:
        """Write an engine state value; None removes it."""

    @abstractmethod
    def acquire_cycle_lease(self, owner: str, ttl_seconds: int) -> bool:
        """Claim or renew the store-wide poll cycle lease.

        Succeeds when the lease is free, expired, or already held by ``owner``.
        Shared by every process that opens the same store.
        """

    @abstractmethod
    def release_cycle_lease(self, owner: str) -> None:
        """Drop the lease if ``owner`` still holds it."""

    @abstractmethod
    def claim_notification(self, intent_id: str) -> bool:
        """Record ``intent_id`` as pending delivery.

        Returns False when the id is already pending or delivered, so a
        restarted process never shows the same notification twice. A failed
        delivery may be claimed again.
        """

    @abstractmethod
    def set_notification_status(self, intent_id: str, status: str) -> None:
        """Mark a claimed notification as delivered or failed."""

    @abstractmethod
    def notification_status(self, intent_id: str) -> str | None:
        """Return the recorded status for ``intent_id``, or None if never claimed."""

    @abstractmethod
    def prune_notifications(self, older_than: datetime) -> int:
        """Forget notification records last touched before ``older_than``."""

    def has_watermark(self, key: str, kind: ActivityKind) -> bool:
        return self.get_watermark(key).is_established(kind)

    @contextmanager
    def key_lock(self, key: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._key_locks.setdefault(key, threading.Lock())
        with lock:
            yield

    def is_baseline_established(self) -> bool:
        return self.get_state(BASELINE_STATE_KEY) == "1"

    def set_baseline_established(self, value: bool) -> None:
        self.set_state(BASELINE_STATE_KEY, "1" if value else "0")

    def reset_baseline(self) -> None:
        self.set_baseline_established(False)

    def credential_fingerprint(self) -> str | None:
        return self.get_state(CREDENTIAL_STATE_KEY)

    def set_credential_fingerprint(self, fingerprint: str | None) -> None:
        self.set_state(CREDENTIAL_STATE_KEY, fingerprint)

    def close(self) -> None:
        """Release resources; the default store holds none between calls."""
