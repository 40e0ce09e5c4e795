from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor

from prpulse.models import NotificationIntent

from .base import Notifier

logger = logging.getLogger(__name__)


class IdempotentNotifier(Notifier):
    """Drops intents whose id was already delivered by this process.

    Remembers the most recent ``max_ids`` ids. An id is only remembered once
    the wrapped notifier accepted it, so a failed delivery may be retried.
    """

    def __init__(self, inner: Notifier, max_ids: int = 1024) -> None:
        self.inner = inner
        self.max_ids = max_ids
        self._delivered: OrderedDict[str, None] = OrderedDict()
        self._lock = threading.Lock()

    def deliver(self, intent: NotificationIntent) -> None:
        with self._lock:
            if intent.id in self._delivered:
                logger.debug("Skipping duplicate notification %s", intent.id)
                return

        self.inner.deliver(intent)

        with self._lock:
            self._delivered[intent.id] = None
            while len(self._delivered) > self.max_ids:
                self._delivered.popitem(last=False)

    def close(self) -> None:
        self.inner.close()


class BackgroundNotifier(Notifier):
    """Hands deliveries to a worker thread so poll cycles never wait on them.

    Failures surface in the log only; ``close`` waits for queued deliveries.
    """

    def __init__(self, inner: Notifier, max_workers: int = 1) -> None:
        self.inner = inner
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="prpulse-notify",
        )

    def deliver(self, intent: NotificationIntent) -> None:
        future = self._executor.submit(self.inner.deliver, intent)
        future.add_done_callback(lambda done: _log_failure(intent, done))

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        self.inner.close()


def _log_failure(intent: NotificationIntent, future: Future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error("Background delivery of %s failed: %s", intent.id, exc)
