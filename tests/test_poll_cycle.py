from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from prpulse.config import NotificationPreferences
from prpulse.models import ActivityKind, Comment, NotificationIntent, PullRequestSnapshot, Review
from prpulse.notifiers.base import DeliveryError, Notifier
from prpulse.permissions import PermissionsState
from prpulse.service import CancellationToken, CycleInProgressError, PollCycleService
from prpulse.sources.base import FetchError, PullRequestSource
from prpulse.store import SQLiteWatermarkStore, StorageError
from prpulse.utils.identity import watermark_key

T0 = datetime(2026, 1, 10, 9, 0, tzinfo=timezone.utc)
NOW = T0 + timedelta(hours=1)
ALL_ON = NotificationPreferences(notify_comments=True, notify_reviews=True)
FULL = PermissionsState()


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.intents: list[NotificationIntent] = []

    def deliver(self, intent: NotificationIntent) -> None:
        self.intents.append(intent)


class FailingNotifier(Notifier):
    def __init__(self) -> None:
        self.attempts = 0

    def deliver(self, intent: NotificationIntent) -> None:
        self.attempts += 1
        raise DeliveryError("notification center unavailable")


class BlockingNotifier(Notifier):
    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()
        self.intents: list[NotificationIntent] = []

    def deliver(self, intent: NotificationIntent) -> None:
        self.intents.append(intent)
        self.entered.set()
        self.release.wait(timeout=5)


class StaticSource(PullRequestSource):
    def __init__(self, snapshot: list[PullRequestSnapshot], login: str | None = "bob") -> None:
        super().__init__(source_id="static")
        self.snapshot = snapshot
        self.login = login

    def fetch(self) -> list[PullRequestSnapshot]:
        return list(self.snapshot)

    def current_user_login(self) -> str | None:
        return self.login


class FailingSource(PullRequestSource):
    def __init__(self) -> None:
        super().__init__(source_id="failing")

    def fetch(self) -> list[PullRequestSnapshot]:
        raise FetchError("API unreachable")


class FlakyStore(SQLiteWatermarkStore):
    def __init__(self, db_path: str, broken_key: str) -> None:
        super().__init__(db_path)
        self.broken_key = broken_key

    def get_watermark(self, key: str):
        if key == self.broken_key:
            raise StorageError("disk I/O error")
        return super().get_watermark(key)

    def set_watermark(self, key: str, kind: ActivityKind, seen_at: datetime) -> bool:
        if key == self.broken_key:
            raise StorageError("disk I/O error")
        return super().set_watermark(key, kind, seen_at)


class CommitFailingStore(SQLiteWatermarkStore):
    def set_watermark(self, key: str, kind: ActivityKind, seen_at: datetime) -> bool:
        raise StorageError("database is locked")


def _comment(comment_id: str, author: str, minutes: int, preview: str = "please rename") -> Comment:
    return Comment(
        id=comment_id,
        author=author,
        created_at=T0 + timedelta(minutes=minutes),
        preview=preview,
    )


def _review(review_id: str, author: str, minutes: int, label: str = "Approved") -> Review:
    return Review(
        id=review_id,
        author=author,
        created_at=T0 + timedelta(minutes=minutes),
        label=label,
    )


def _pull_request(
    number: int = 1,
    comments: list[Comment] | None = None,
    reviews: list[Review] | None = None,
    repo: str = "acme/widgets",
) -> PullRequestSnapshot:
    return PullRequestSnapshot(
        repo_full_name=repo,
        number=number,
        title=f"PR {number}",
        recent_comments=comments or [],
        recent_reviews=reviews or [],
    )


@pytest.fixture
def store(tmp_path) -> SQLiteWatermarkStore:
    sqlite_store = SQLiteWatermarkStore(str(tmp_path / "state.sqlite"))
    sqlite_store.init_db()
    return sqlite_store


def _service(store, notifier: Notifier, **kwargs) -> PollCycleService:
    return PollCycleService(store=store, notifier=notifier, clock=lambda: NOW, **kwargs)


def _stored_watermark(store, pull_request: PullRequestSnapshot):
    return store.get_watermark(watermark_key(pull_request.repo_full_name, pull_request.number))


def _seed(store, pull_request: PullRequestSnapshot, comment_at=T0, review_at=T0) -> str:
    key = watermark_key(pull_request.repo_full_name, pull_request.number)
    store.set_baseline_established(True)
    if comment_at is not None:
        store.set_watermark(key, ActivityKind.COMMENT, comment_at)
    if review_at is not None:
        store.set_watermark(key, ActivityKind.REVIEW, review_at)
    return key


def test_first_cycle_seeds_baseline_without_notifications(store) -> None:
    notifier = RecordingNotifier()
    pull_request = _pull_request(
        comments=[
            _comment("c1", "alice", -30),
            _comment("c2", "carol", -10),
            _comment("c3", "dave", -20),
        ],
    )

    result = _service(store, notifier).run_poll_cycle([pull_request], FULL, ALL_ON)

    assert result.baseline_ran is True
    assert result.notifications_sent == 0
    assert notifier.intents == []
    watermark = store.get_watermark(watermark_key("acme/widgets", 1))
    assert watermark.last_seen_comment_at == T0 - timedelta(minutes=10)
    assert watermark.last_seen_review_at == NOW
    assert store.is_baseline_established() is True


def test_new_comment_notifies_and_watermark_moves_past_self_comment(store) -> None:
    notifier = RecordingNotifier()
    pull_request = _pull_request(
        comments=[
            _comment("c1", "alice", 1, preview="nit: rename this"),
            _comment("c2", "bob", 2, preview="done"),
        ],
    )
    key = _seed(store, pull_request)

    result = _service(store, notifier).run_poll_cycle(
        [pull_request], FULL, ALL_ON, current_user_login="bob"
    )

    assert result.ok
    assert result.notifications_sent == 1
    assert [intent.body for intent in notifier.intents] == ["New comment by alice: nit: rename this"]
    assert notifier.intents[0].title == "widgets #1"
    assert notifier.intents[0].id == f"comment-{key}-c1"
    assert store.get_watermark(key).last_seen_comment_at == T0 + timedelta(minutes=2)


def test_seen_activity_is_never_notified_again(store) -> None:
    notifier = RecordingNotifier()
    pull_request = _pull_request(comments=[_comment("c1", "alice", 1)])
    _seed(store, pull_request)
    service = _service(store, notifier)

    first = service.run_poll_cycle([pull_request], FULL, ALL_ON, current_user_login="bob")
    second = service.run_poll_cycle([pull_request], FULL, ALL_ON, current_user_login="bob")

    assert first.notifications_sent == 1
    assert second.notifications_sent == 0
    assert len(notifier.intents) == 1


def test_activity_at_or_before_watermark_is_ignored(store) -> None:
    notifier = RecordingNotifier()
    pull_request = _pull_request(
        comments=[_comment("c0", "alice", -1), _comment("c1", "alice", 0)],
        reviews=[_review("r0", "carol", 0)],
    )
    _seed(store, pull_request)

    result = _service(store, notifier).run_poll_cycle([pull_request], FULL, ALL_ON)

    assert result.notifications_sent == 0
    assert notifier.intents == []


def test_self_authored_activity_never_notifies(store) -> None:
    notifier = RecordingNotifier()
    pull_request = _pull_request(
        comments=[_comment("c1", "Bob", 5)],
        reviews=[_review("r1", "BOB", 6, label="Commented")],
    )
    key = _seed(store, pull_request)

    result = _service(store, notifier).run_poll_cycle(
        [pull_request], FULL, ALL_ON, current_user_login="bob"
    )

    assert result.notifications_sent == 0
    watermark = store.get_watermark(key)
    assert watermark.last_seen_comment_at == T0 + timedelta(minutes=5)
    assert watermark.last_seen_review_at == T0 + timedelta(minutes=6)


def test_disabled_category_is_muted_but_still_advances(store) -> None:
    notifier = RecordingNotifier()
    pull_request = _pull_request(
        comments=[_comment("c1", "alice", 1)],
        reviews=[_review("r1", "carol", 2, label="Changes requested")],
    )
    key = _seed(store, pull_request)
    comments_only = NotificationPreferences(notify_comments=True, notify_reviews=False)

    result = _service(store, notifier).run_poll_cycle([pull_request], FULL, comments_only)

    assert result.notifications_sent == 1
    assert result.suppressed_disabled == 1
    assert [intent.id.split("-")[0] for intent in notifier.intents] == ["comment"]
    watermark = store.get_watermark(key)
    assert watermark.last_seen_comment_at == T0 + timedelta(minutes=1)
    assert watermark.last_seen_review_at == T0 + timedelta(minutes=2)


def test_credential_change_rebaselines_existing_pull_requests(store) -> None:
    notifier = RecordingNotifier()
    service = _service(store, notifier)
    assert service.observe_credential("token-one") is True
    assert service.observe_credential("token-one") is False

    pull_request = _pull_request(comments=[_comment("c1", "alice", 1)])
    key = _seed(store, pull_request)

    assert service.observe_credential("token-two") is True
    assert store.is_baseline_established() is False

    updated = _pull_request(
        comments=[_comment("c1", "alice", 1), _comment("c2", "carol", 3), _comment("c3", "dave", 4)],
    )
    result = service.run_poll_cycle([updated], FULL, ALL_ON, current_user_login="bob")

    assert result.baseline_ran is True
    assert result.notifications_sent == 0
    assert notifier.intents == []
    assert store.get_watermark(key).last_seen_comment_at == T0 + timedelta(minutes=4)
    assert store.is_baseline_established() is True


def test_deleting_credential_resets_baseline(store) -> None:
    service = _service(store, RecordingNotifier())
    service.observe_credential("token-one")
    store.set_baseline_established(True)

    assert service.observe_credential(None) is True
    assert store.is_baseline_established() is False
    assert store.credential_fingerprint() is None


def test_fingerprint_never_stores_raw_credential(store) -> None:
    _service(store, RecordingNotifier()).observe_credential("ghp_secret")

    assert store.credential_fingerprint() != "ghp_secret"
    assert len(store.credential_fingerprint() or "") == 64


def test_reset_baseline_makes_next_cycle_silent(store) -> None:
    notifier = RecordingNotifier()
    pull_request = _pull_request(comments=[_comment("c1", "alice", 1)])
    _seed(store, pull_request)
    service = _service(store, notifier)

    service.reset_baseline()
    result = service.run_poll_cycle([pull_request], FULL, ALL_ON)

    assert result.baseline_ran is True
    assert notifier.intents == []


def test_pull_request_appearing_after_baseline_is_seeded_silently(store) -> None:
    notifier = RecordingNotifier()
    store.set_baseline_established(True)
    pull_request = _pull_request(number=9, comments=[_comment("c1", "alice", 1)])

    result = _service(store, notifier).run_poll_cycle([pull_request], FULL, ALL_ON)

    assert result.notifications_sent == 0
    watermark = _stored_watermark(store, pull_request)
    assert watermark.last_seen_comment_at == T0 + timedelta(minutes=1)
    assert watermark.last_seen_review_at == NOW


def test_watermarks_never_move_backwards(store) -> None:
    notifier = RecordingNotifier()
    pull_request = _pull_request(comments=[_comment("c5", "alice", 5)])
    key = _seed(store, pull_request)
    service = _service(store, notifier)
    service.run_poll_cycle([pull_request], FULL, ALL_ON)

    truncated = _pull_request(comments=[_comment("c1", "alice", -30)])
    service.run_poll_cycle([truncated], FULL, ALL_ON)

    assert store.get_watermark(key).last_seen_comment_at == T0 + timedelta(minutes=5)


def test_multiple_new_reviews_collapse_into_one_notification(store) -> None:
    notifier = RecordingNotifier()
    pull_request = _pull_request(
        reviews=[
            _review("r1", "alice", 1, label="Commented"),
            _review("r2", "carol", 2, label="Approved"),
        ],
    )
    _seed(store, pull_request)

    _service(store, notifier).run_poll_cycle([pull_request], FULL, ALL_ON)

    assert [intent.body for intent in notifier.intents] == ["2 new reviews. Latest: Approved by carol"]


def test_delivery_failure_does_not_block_watermarks_or_siblings(store) -> None:
    notifier = FailingNotifier()
    first = _pull_request(number=1, comments=[_comment("c1", "alice", 1)])
    second = _pull_request(number=2, comments=[_comment("c2", "carol", 2)])
    _seed(store, first)
    _seed(store, second)

    result = _service(store, notifier).run_poll_cycle([first, second], FULL, ALL_ON)

    assert notifier.attempts == 2
    assert result.notifications_sent == 0
    assert result.processed == 2
    assert len(result.errors) == 2
    assert _stored_watermark(store, first).last_seen_comment_at == T0 + timedelta(minutes=1)
    assert _stored_watermark(store, second).last_seen_comment_at == T0 + timedelta(minutes=2)


def test_storage_failure_is_isolated_to_one_pull_request(tmp_path) -> None:
    broken = _pull_request(number=1, comments=[_comment("c1", "alice", 1)])
    healthy = _pull_request(number=2, comments=[_comment("c2", "carol", 2)])
    store = FlakyStore(str(tmp_path / "state.sqlite"), broken_key=watermark_key("acme/widgets", 1))
    store.init_db()
    _seed(store, healthy)
    notifier = RecordingNotifier()

    result = _service(store, notifier).run_poll_cycle([broken, healthy], FULL, ALL_ON)

    assert result.processed == 1
    assert len(result.errors) == 1
    assert "acme:widgets-1" in result.errors[0]
    assert [intent.body for intent in notifier.intents] == ["New comment by carol: please rename"]


def test_missing_comment_permission_skips_comment_category(store) -> None:
    notifier = RecordingNotifier()
    pull_request = _pull_request(
        comments=[_comment("c1", "alice", 1)],
        reviews=[_review("r1", "carol", 2)],
    )
    key = _seed(store, pull_request, comment_at=None)
    no_comments = PermissionsState(can_read_comments=False)

    result = _service(store, notifier).run_poll_cycle([pull_request], no_comments, ALL_ON)

    assert [intent.id for intent in notifier.intents] == [f"review-{key}-r1"]
    assert result.notifications_sent == 1
    assert store.get_watermark(key).last_seen_comment_at is None


def test_missing_pull_request_permission_ignores_snapshot(store) -> None:
    notifier = RecordingNotifier()
    pull_request = _pull_request(comments=[_comment("c1", "alice", 1)])

    result = _service(store, notifier).run_poll_cycle(
        [pull_request], PermissionsState(can_read_pull_requests=False), ALL_ON
    )

    assert result.ok is False
    assert result.baseline_ran is False
    assert store.is_baseline_established() is False
    assert store.list_watermarks() == {}


def test_fetch_failure_leaves_state_untouched(store) -> None:
    service = _service(store, RecordingNotifier())

    with pytest.raises(FetchError):
        service.run_once(FailingSource(), FULL, ALL_ON)

    assert store.is_baseline_established() is False
    assert store.list_watermarks() == {}


def test_run_once_uses_source_login_for_self_filtering(store) -> None:
    notifier = RecordingNotifier()
    pull_request = _pull_request(comments=[_comment("c1", "alice", 1), _comment("c2", "bob", 2)])
    _seed(store, pull_request)

    result = _service(store, notifier).run_once(StaticSource([pull_request], login="BOB"), FULL, ALL_ON)

    assert result.notifications_sent == 1
    assert notifier.intents[0].body.startswith("New comment by alice")


def test_parallel_processing_matches_sequential(store) -> None:
    notifier = RecordingNotifier()
    pull_requests = [
        _pull_request(number=number, comments=[_comment(f"c{number}", "alice", number)])
        for number in range(1, 9)
    ]
    for pull_request in pull_requests:
        _seed(store, pull_request)

    result = _service(store, notifier, max_workers=4).run_poll_cycle(pull_requests, FULL, ALL_ON)

    assert result.notifications_sent == 8
    assert result.processed == 8
    assert sorted(intent.title for intent in notifier.intents) == sorted(
        f"widgets #{number}" for number in range(1, 9)
    )


def test_duplicate_snapshot_entries_notify_once(store) -> None:
    notifier = RecordingNotifier()
    pull_request = _pull_request(comments=[_comment("c1", "alice", 1)])
    _seed(store, pull_request)

    result = _service(store, notifier).run_poll_cycle([pull_request, pull_request], FULL, ALL_ON)

    assert result.notifications_sent == 1


def test_dry_run_previews_without_writing(store) -> None:
    previews: list[NotificationIntent] = []
    pull_request = _pull_request(comments=[_comment("c1", "alice", 1)])
    key = _seed(store, pull_request)
    service = PollCycleService(
        store=store,
        notifier=None,
        dry_run=True,
        preview_callback=previews.append,
        clock=lambda: NOW,
    )

    result = service.run_poll_cycle([pull_request], FULL, ALL_ON)

    assert result.previewed == 1
    assert result.notifications_sent == 0
    assert len(previews) == 1
    assert store.get_watermark(key).last_seen_comment_at == T0


def test_dry_run_does_not_establish_baseline(store) -> None:
    service = PollCycleService(store=store, notifier=None, dry_run=True, preview_callback=lambda _: None)

    result = service.run_poll_cycle([_pull_request(comments=[_comment("c1", "alice", 1)])], FULL, ALL_ON)

    assert result.baseline_ran is True
    assert store.is_baseline_established() is False
    assert store.list_watermarks() == {}


def test_notifier_is_required_outside_dry_run(store) -> None:
    with pytest.raises(ValueError):
        PollCycleService(store=store, notifier=None)


def test_baseline_storage_failure_keeps_flag_unset(tmp_path) -> None:
    store = FlakyStore(str(tmp_path / "state.sqlite"), broken_key=watermark_key("acme/widgets", 1))
    store.init_db()
    snapshot = [_pull_request(number=1), _pull_request(number=2, comments=[_comment("c1", "alice", 1)])]

    result = _service(store, RecordingNotifier()).run_poll_cycle(snapshot, FULL, ALL_ON)

    assert result.baseline_ran is True
    assert result.processed == 1
    assert len(result.errors) == 1
    assert store.is_baseline_established() is False
    assert _stored_watermark(store, snapshot[1]).last_seen_comment_at == T0 + timedelta(minutes=1)


def test_concurrent_cycle_is_rejected(store) -> None:
    notifier = BlockingNotifier()
    pull_request = _pull_request(comments=[_comment("c1", "alice", 1)])
    _seed(store, pull_request)
    service = _service(store, notifier)

    worker = threading.Thread(
        target=service.run_poll_cycle,
        args=([pull_request], FULL, ALL_ON),
    )
    worker.start()
    assert notifier.entered.wait(timeout=5)

    try:
        with pytest.raises(CycleInProgressError):
            service.run_poll_cycle([pull_request], FULL, ALL_ON)
    finally:
        notifier.release.set()
        worker.join(timeout=5)


def test_superseding_cycle_cancels_stale_one_before_commit(store) -> None:
    notifier = BlockingNotifier()
    first = _pull_request(number=1, comments=[_comment("c1", "alice", 1)])
    second = _pull_request(number=2, comments=[_comment("c2", "carol", 2)])
    _seed(store, first)
    _seed(store, second)
    service = _service(store, notifier)
    stale_token = CancellationToken()
    stale_results = []

    stale = threading.Thread(
        target=lambda: stale_results.append(
            service.run_poll_cycle([first, second], FULL, ALL_ON, cancel_token=stale_token)
        )
    )
    stale.start()
    assert notifier.entered.wait(timeout=5)

    fresh_results = []
    fresh = threading.Thread(
        target=lambda: fresh_results.append(
            service.run_poll_cycle([], FULL, ALL_ON, supersede=True)
        )
    )
    fresh.start()
    for _ in range(500):
        if stale_token.cancelled:
            break
        time.sleep(0.01)
    notifier.release.set()
    stale.join(timeout=5)
    fresh.join(timeout=5)

    assert stale_token.cancelled is True
    assert stale_results[0].cancelled is True
    assert stale_results[0].processed == 0
    assert len(notifier.intents) == 1
    assert _stored_watermark(store, first).last_seen_comment_at == T0
    assert _stored_watermark(store, second).last_seen_comment_at == T0
    assert fresh_results[0].ok


def test_cycle_running_in_another_process_is_rejected(tmp_path) -> None:
    db_path = str(tmp_path / "state.sqlite")
    watch_store = SQLiteWatermarkStore(db_path)
    watch_store.init_db()
    run_store = SQLiteWatermarkStore(db_path)
    pull_request = _pull_request(comments=[_comment("c1", "alice", 1)])
    _seed(watch_store, pull_request)
    blocking = BlockingNotifier()
    run_notifier = RecordingNotifier()
    watch_service = _service(watch_store, blocking)
    run_service = _service(run_store, run_notifier)

    worker = threading.Thread(
        target=watch_service.run_poll_cycle,
        args=([pull_request], FULL, ALL_ON),
    )
    worker.start()
    assert blocking.entered.wait(timeout=5)

    try:
        with pytest.raises(CycleInProgressError):
            run_service.run_poll_cycle([pull_request], FULL, ALL_ON)
    finally:
        blocking.release.set()
        worker.join(timeout=5)

    result = run_service.run_poll_cycle([pull_request], FULL, ALL_ON)

    assert result.ok
    assert result.notifications_sent == 0
    assert run_notifier.intents == []
    assert [intent.id for intent in blocking.intents] == ["comment-acme:widgets-1-c1"]


def test_waiting_cycle_runs_after_another_process_finishes(tmp_path) -> None:
    db_path = str(tmp_path / "state.sqlite")
    watch_store = SQLiteWatermarkStore(db_path)
    watch_store.init_db()
    pull_request = _pull_request(comments=[_comment("c1", "alice", 1)])
    _seed(watch_store, pull_request)
    blocking = BlockingNotifier()
    run_notifier = RecordingNotifier()
    watch_service = _service(watch_store, blocking)
    run_service = _service(SQLiteWatermarkStore(db_path), run_notifier, lease_poll_seconds=0.01)
    run_results = []

    watcher = threading.Thread(
        target=watch_service.run_poll_cycle,
        args=([pull_request], FULL, ALL_ON),
    )
    watcher.start()
    assert blocking.entered.wait(timeout=5)

    waiter = threading.Thread(
        target=lambda: run_results.append(
            run_service.run_poll_cycle([pull_request], FULL, ALL_ON, wait=True)
        )
    )
    waiter.start()
    waiter.join(timeout=0.2)
    assert run_results == []

    blocking.release.set()
    watcher.join(timeout=5)
    waiter.join(timeout=5)

    assert run_results[0].ok
    assert run_notifier.intents == []


def test_restart_after_failed_commit_does_not_repeat_notification(tmp_path) -> None:
    db_path = str(tmp_path / "state.sqlite")
    failing_store = CommitFailingStore(db_path)
    failing_store.init_db()
    healthy_store = SQLiteWatermarkStore(db_path)
    pull_request = _pull_request(comments=[_comment("c1", "alice", 1)])
    key = _seed(healthy_store, pull_request)
    first_notifier = RecordingNotifier()

    first = _service(failing_store, first_notifier).run_poll_cycle([pull_request], FULL, ALL_ON)

    assert first.notifications_sent == 1
    assert len(first.errors) == 1
    assert healthy_store.get_watermark(key).last_seen_comment_at == T0

    restarted_notifier = RecordingNotifier()
    second = _service(healthy_store, restarted_notifier).run_poll_cycle([pull_request], FULL, ALL_ON)

    assert second.ok
    assert second.skipped_duplicates == 1
    assert restarted_notifier.intents == []
    assert healthy_store.get_watermark(key).last_seen_comment_at == T0 + timedelta(minutes=1)


def test_failed_delivery_is_recorded_as_failed(store) -> None:
    pull_request = _pull_request(comments=[_comment("c1", "alice", 1)])
    key = _seed(store, pull_request)

    _service(store, FailingNotifier()).run_poll_cycle([pull_request], FULL, ALL_ON)

    assert store.notification_status(f"comment-{key}-c1") == "failed"
