from __future__ import annotations

import logging
import os
import socket
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterator, Sequence

from prpulse.activity import (
    ClassifiedActivity,
    advance_watermarks,
    classify_activity,
    compose_notification,
    establish_baseline,
)
from prpulse.config import NotificationPreferences
from prpulse.models import ActivityKind, NotificationIntent, PullRequestSnapshot, Watermark
from prpulse.notifiers import Notifier
from prpulse.permissions import PermissionsState
from prpulse.sources import PullRequestSource
from prpulse.store import (
    NOTIFICATION_DELIVERED,
    NOTIFICATION_FAILED,
    NOTIFICATION_PENDING,
    StorageError,
    WatermarkStore,
)
from prpulse.utils.datetime_utils import utc_now
from prpulse.utils.identity import normalize_login, stable_hash, watermark_key

logger = logging.getLogger(__name__)


class CycleInProgressError(RuntimeError):
    """Raised when another poll cycle, in this or another process, holds the store."""


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(slots=True)
class CycleResult:
    notifications_sent: int = 0
    previewed: int = 0
    processed: int = 0
    suppressed_disabled: int = 0
    skipped_duplicates: int = 0
    baseline_ran: bool = False
    cancelled: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(slots=True)
class _PullRequestOutcome:
    processed: bool = False
    cancelled: bool = False
    notifications_sent: int = 0
    previewed: int = 0
    suppressed_disabled: int = 0
    skipped_duplicates: int = 0
    errors: list[str] = field(default_factory=list)


class PollCycleService:
    """Runs poll cycles: baseline or classify, notify, then advance watermarks.

    Only one cycle runs at a time per store. Inside a process a lock guards
    the service; across processes a lease row in the store does, renewed for
    every pull request and expiring after ``lease_seconds`` if its holder
    dies. Pull requests inside a cycle are independent of each other and may
    be processed by ``max_workers`` threads; the store's per-key lock keeps
    each read-then-write atomic.

    Every intent id is claimed in the store before delivery, so a cycle
    re-run after a crash or a failed commit does not show it again.
    """

    def __init__(
        self,
        *,
        store: WatermarkStore,
        notifier: Notifier | None,
        max_workers: int = 1,
        dry_run: bool = False,
        preview_callback: Callable[[NotificationIntent], None] | None = None,
        clock: Callable[[], datetime] = utc_now,
        lease_seconds: int = 600,
        lease_poll_seconds: float = 0.5,
        notification_retention: timedelta = timedelta(days=30),
    ) -> None:
        if notifier is None and not dry_run:
            raise ValueError("notifier is required when dry_run is false")
        self.store = store
        self.notifier = notifier
        self.max_workers = max(1, max_workers)
        self.dry_run = dry_run
        self.preview_callback = preview_callback or _default_preview
        self.clock = clock
        self.lease_seconds = lease_seconds
        self.lease_poll_seconds = lease_poll_seconds
        self.notification_retention = notification_retention
        self._lease_owner = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self._cycle_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._active_token: CancellationToken | None = None

    def run_once(
        self,
        source: PullRequestSource,
        permissions: PermissionsState,
        preferences: NotificationPreferences,
        **cycle_options,
    ) -> CycleResult:
        """Fetch a snapshot and run one cycle over it.

        ``FetchError`` from the source propagates before anything is written.
        """
        snapshot = source.fetch()
        logger.info("Source %s returned %d pull requests", source.source_id, len(snapshot))
        return self.run_poll_cycle(
            snapshot,
            permissions,
            preferences,
            current_user_login=source.current_user_login(),
            **cycle_options,
        )

    def run_poll_cycle(
        self,
        snapshot: Sequence[PullRequestSnapshot],
        permissions: PermissionsState,
        preferences: NotificationPreferences,
        *,
        current_user_login: str | None = None,
        cancel_token: CancellationToken | None = None,
        wait: bool = False,
        supersede: bool = False,
    ) -> CycleResult:
        token = cancel_token or CancellationToken()
        self._begin_cycle(token, wait=wait, supersede=supersede)
        try:
            return self._run_cycle(snapshot, permissions, preferences, current_user_login, token)
        finally:
            self._end_cycle(token)

    def cancel_active_cycle(self) -> bool:
        with self._state_lock:
            active = self._active_token
        if active is None:
            return False
        active.cancel()
        return True

    def reset_baseline(self, *, wait: bool = True) -> None:
        """Forget that a baseline exists; the next cycle re-seeds silently."""
        with self._exclusive_store(wait=wait):
            self.store.reset_baseline()
        logger.info("Baseline reset; the next poll cycle will re-seed watermarks")

    def observe_credential(self, credential: str | None, *, wait: bool = True) -> bool:
        """Reset the baseline if the credential differs from the last one seen.

        Only a hash of the credential is stored. Returns whether a reset happened.
        """
        normalized = (credential or "").strip()
        fingerprint = stable_hash(normalized) if normalized else None
        with self._exclusive_store(wait=wait):
            if self.store.credential_fingerprint() == fingerprint:
                return False
            self.store.set_credential_fingerprint(fingerprint)
            self.store.reset_baseline()
        logger.info("Credential changed; baseline will be re-established on the next poll")
        return True

    def baseline_established(self) -> bool:
        return self.store.is_baseline_established()

    def watermark(self, repo_full_name: str, number: int) -> Watermark:
        return self.store.get_watermark(watermark_key(repo_full_name, number))

    def watermarks(self) -> dict[str, Watermark]:
        return self.store.list_watermarks()

    def _begin_cycle(self, token: CancellationToken, *, wait: bool, supersede: bool) -> None:
        if supersede and self.cancel_active_cycle():
            logger.info("Superseding in-flight poll cycle")

        blocking = wait or supersede
        if not self._cycle_lock.acquire(blocking=blocking):
            raise CycleInProgressError("a poll cycle is already running")
        try:
            if not self.dry_run:
                self._claim_lease(blocking=blocking)
        except BaseException:
            self._cycle_lock.release()
            raise
        with self._state_lock:
            self._active_token = token

    def _end_cycle(self, token: CancellationToken) -> None:
        with self._state_lock:
            if self._active_token is token:
                self._active_token = None
        try:
            if not self.dry_run:
                self._release_lease()
        finally:
            self._cycle_lock.release()

    @contextmanager
    def _exclusive_store(self, *, wait: bool) -> Iterator[None]:
        if not self._cycle_lock.acquire(blocking=wait):
            raise CycleInProgressError("a poll cycle is already running")
        try:
            self._claim_lease(blocking=wait)
            try:
                yield
            finally:
                self._release_lease()
        finally:
            self._cycle_lock.release()

    def _claim_lease(self, *, blocking: bool) -> None:
        while not self.store.acquire_cycle_lease(self._lease_owner, self.lease_seconds):
            if not blocking:
                raise CycleInProgressError("another process is running a poll cycle on this store")
            time.sleep(self.lease_poll_seconds)

    def _release_lease(self) -> None:
        try:
            self.store.release_cycle_lease(self._lease_owner)
        except StorageError as exc:
            logger.warning(
                "Could not release the store lease; it expires within %d seconds: %s",
                self.lease_seconds,
                exc,
            )

    def _run_cycle(
        self,
        snapshot: Sequence[PullRequestSnapshot],
        permissions: PermissionsState,
        preferences: NotificationPreferences,
        current_user_login: str | None,
        token: CancellationToken,
    ) -> CycleResult:
        result = CycleResult()

        if not permissions.has_minimum_permissions:
            message = "token cannot read pull requests; snapshot ignored"
            logger.warning(message)
            result.errors.append(message)
            return result

        kinds = permissions.readable_kinds()
        for kind in ActivityKind:
            if kind not in kinds:
                logger.info("Skipping %s activity: token lacks read permission", kind.value)

        now = self.clock()
        try:
            baseline_done = self.store.is_baseline_established()
        except StorageError as exc:
            message = f"failed to read baseline flag: {exc}"
            logger.exception(message)
            result.errors.append(message)
            return result

        if not baseline_done:
            return self._run_baseline(snapshot, kinds, now, token, result)

        login = normalize_login(current_user_login)
        outcomes = self._process_snapshot(snapshot, kinds, preferences, login, now, token)
        for outcome in outcomes:
            result.processed += int(outcome.processed)
            result.cancelled = result.cancelled or outcome.cancelled
            result.notifications_sent += outcome.notifications_sent
            result.previewed += outcome.previewed
            result.suppressed_disabled += outcome.suppressed_disabled
            result.skipped_duplicates += outcome.skipped_duplicates
            result.errors.extend(outcome.errors)

        if result.cancelled:
            logger.info("Poll cycle cancelled after processing %d pull requests", result.processed)
        elif not self.dry_run:
            self._prune_notifications(now)
        return result

    def _prune_notifications(self, now: datetime) -> None:
        try:
            removed = self.store.prune_notifications(now - self.notification_retention)
        except StorageError as exc:
            logger.warning("Could not prune notification history: %s", exc)
            return
        if removed:
            logger.debug("Pruned %d notification records", removed)

    def _run_baseline(
        self,
        snapshot: Sequence[PullRequestSnapshot],
        kinds: tuple[ActivityKind, ...],
        now: datetime,
        token: CancellationToken,
        result: CycleResult,
    ) -> CycleResult:
        result.baseline_ran = True

        if self.dry_run:
            logger.info("[DRY RUN] Would establish baseline for %d pull requests", len(snapshot))
            return result

        outcome = establish_baseline(self.store, snapshot, now, kinds, token)
        result.processed = outcome.seeded
        result.cancelled = outcome.cancelled
        result.errors.extend(outcome.errors)

        if not outcome.complete:
            logger.warning(
                "Baseline incomplete (seeded=%d errors=%d cancelled=%s); it will be retried",
                outcome.seeded,
                len(outcome.errors),
                outcome.cancelled,
            )
            return result

        try:
            self.store.set_baseline_established(True)
        except StorageError as exc:
            message = f"failed to record baseline: {exc}"
            logger.exception(message)
            result.errors.append(message)
            return result

        logger.info("Baseline established for %d pull requests", outcome.seeded)
        return result

    def _process_snapshot(
        self,
        snapshot: Sequence[PullRequestSnapshot],
        kinds: tuple[ActivityKind, ...],
        preferences: NotificationPreferences,
        login: str,
        now: datetime,
        token: CancellationToken,
    ) -> list[_PullRequestOutcome]:
        def process(pull_request: PullRequestSnapshot) -> _PullRequestOutcome:
            return self._process_pull_request(pull_request, kinds, preferences, login, now, token)

        if self.max_workers == 1 or len(snapshot) < 2:
            return [process(pull_request) for pull_request in snapshot]

        with ThreadPoolExecutor(
            max_workers=self.max_workers,
            thread_name_prefix="prpulse-cycle",
        ) as executor:
            return list(executor.map(process, snapshot))

    def _process_pull_request(
        self,
        pull_request: PullRequestSnapshot,
        kinds: tuple[ActivityKind, ...],
        preferences: NotificationPreferences,
        login: str,
        now: datetime,
        token: CancellationToken,
    ) -> _PullRequestOutcome:
        outcome = _PullRequestOutcome()
        if token.cancelled:
            outcome.cancelled = True
            return outcome

        key = watermark_key(pull_request.repo_full_name, pull_request.number)
        try:
            if not self.dry_run and not self.store.acquire_cycle_lease(
                self._lease_owner, self.lease_seconds
            ):
                message = f"lost the store lease to another process before {key}; cycle cancelled"
                logger.warning(message)
                token.cancel()
                outcome.cancelled = True
                outcome.errors.append(message)
                return outcome

            with self.store.key_lock(key):
                watermark = self.store.get_watermark(key)

                for kind in kinds:
                    last_seen = watermark.last_seen(kind)
                    if last_seen is None:
                        # Seeded silently by advance_watermarks below.
                        continue

                    activity = classify_activity(
                        kind,
                        pull_request.items(kind),
                        last_seen,
                        login,
                        enabled=preferences.is_enabled(kind),
                    )
                    if activity.should_notify:
                        self._dispatch(pull_request, activity, key, outcome)
                    elif activity.new_items:
                        outcome.suppressed_disabled += len(activity.new_items)
                        logger.debug(
                            "Suppressed %d new %s items on %s (disabled)",
                            len(activity.new_items),
                            kind.value,
                            key,
                        )

                if token.cancelled:
                    outcome.cancelled = True
                    return outcome

                if not self.dry_run:
                    advance_watermarks(self.store, pull_request, key, now, kinds)
        except StorageError as exc:
            message = f"failed to update watermarks for {key}: {exc}"
            logger.exception(message)
            outcome.errors.append(message)
            return outcome

        outcome.processed = True
        return outcome

    def _dispatch(
        self,
        pull_request: PullRequestSnapshot,
        activity: ClassifiedActivity,
        key: str,
        outcome: _PullRequestOutcome,
    ) -> None:
        try:
            intent = compose_notification(pull_request, activity, key)
        except Exception as exc:  # noqa: BLE001
            message = f"failed to compose {activity.kind.value} notification for {key}: {exc}"
            logger.exception(message)
            outcome.errors.append(message)
            return

        if self.dry_run:
            if self.store.notification_status(intent.id) in (NOTIFICATION_PENDING, NOTIFICATION_DELIVERED):
                logger.debug("[DRY RUN] %s was already delivered by an earlier cycle", intent.id)
                outcome.skipped_duplicates += 1
                return
            self.preview_callback(intent)
            outcome.previewed += 1
            return

        try:
            claimed = self.store.claim_notification(intent.id)
        except Exception as exc:  # noqa: BLE001
            message = f"failed to record pending notification {intent.id}: {exc}"
            logger.exception(message)
            outcome.errors.append(message)
            return

        if not claimed:
            logger.info("Skipping %s: already delivered by an earlier cycle", intent.id)
            outcome.skipped_duplicates += 1
            return

        try:
            self.notifier.deliver(intent)
        except Exception as exc:  # noqa: BLE001
            message = f"failed to deliver {intent.id}: {exc}"
            logger.exception(message)
            outcome.errors.append(message)
            self._record_notification(intent, NOTIFICATION_FAILED, outcome)
            return

        self._record_notification(intent, NOTIFICATION_DELIVERED, outcome)
        outcome.notifications_sent += 1
        logger.info("Notified %s | %s", intent.title, intent.body)

    def _record_notification(
        self,
        intent: NotificationIntent,
        status: str,
        outcome: _PullRequestOutcome,
    ) -> None:
        try:
            self.store.set_notification_status(intent.id, status)
        except Exception as exc:  # noqa: BLE001
            message = f"failed to mark notification {intent.id} as {status}: {exc}"
            logger.exception(message)
            outcome.errors.append(message)


def _default_preview(intent: NotificationIntent) -> None:
    print(f"[DRY RUN] WOULD NOTIFY: {intent.title}")
    print(f"  {intent.body}")
    print(f"  id: {intent.id}")
    print("")
