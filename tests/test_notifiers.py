from __future__ import annotations

import subprocess

import pytest
import requests

from prpulse.models import NotificationIntent
from prpulse.notifiers import (
    BackgroundNotifier,
    CommandNotifier,
    DeliveryError,
    IdempotentNotifier,
    LogNotifier,
    Notifier,
    WebhookNotifier,
    build_webhook_payload,
    render_notification_text,
)

INTENT = NotificationIntent(
    id="comment-acme:widgets-42-c1",
    title="widgets #42",
    body="New comment by alice: looks good",
)


class RecordingNotifier(Notifier):
    def __init__(self, failures: int = 0) -> None:
        self.calls: list[str] = []
        self.failures = failures
        self.closed = False

    def deliver(self, intent: NotificationIntent) -> None:
        if self.failures:
            self.failures -= 1
            raise DeliveryError("busy")
        self.calls.append(intent.id)

    def close(self) -> None:
        self.closed = True


class _DummyResponse:
    def __init__(self, status_code: int = 200, text: str = "ok") -> None:
        self.status_code = status_code
        self.text = text


def test_idempotent_notifier_drops_repeated_ids() -> None:
    inner = RecordingNotifier()
    notifier = IdempotentNotifier(inner)

    notifier.deliver(INTENT)
    notifier.deliver(INTENT)

    assert inner.calls == [INTENT.id]


def test_idempotent_notifier_allows_retry_after_failure() -> None:
    inner = RecordingNotifier(failures=1)
    notifier = IdempotentNotifier(inner)

    with pytest.raises(DeliveryError):
        notifier.deliver(INTENT)
    notifier.deliver(INTENT)

    assert inner.calls == [INTENT.id]


def test_idempotent_notifier_forgets_oldest_ids() -> None:
    inner = RecordingNotifier()
    notifier = IdempotentNotifier(inner, max_ids=1)
    other = NotificationIntent(id="review-acme:widgets-42-r1", title="widgets #42", body="x")

    notifier.deliver(INTENT)
    notifier.deliver(other)
    notifier.deliver(INTENT)

    assert inner.calls == [INTENT.id, other.id, INTENT.id]


def test_background_notifier_delivers_and_flushes_on_close() -> None:
    inner = RecordingNotifier()
    notifier = BackgroundNotifier(inner)

    notifier.deliver(INTENT)
    notifier.close()

    assert inner.calls == [INTENT.id]
    assert inner.closed is True


def test_background_notifier_logs_failures(caplog: pytest.LogCaptureFixture) -> None:
    notifier = BackgroundNotifier(RecordingNotifier(failures=1))

    notifier.deliver(INTENT)
    notifier.close()

    assert "Background delivery of comment-acme:widgets-42-c1 failed" in caplog.text


def test_command_notifier_substitutes_placeholders(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict = {}

    def fake_run(args, **kwargs):
        captured["args"] = args
        return subprocess.CompletedProcess(args, 0, stdout="", stderr="")

    monkeypatch.setattr("subprocess.run", fake_run)
    notifier = CommandNotifier(["notify-send", "--app-name=prpulse", "{title}", "{body}"])

    notifier.deliver(INTENT)

    assert captured["args"] == [
        "notify-send",
        "--app-name=prpulse",
        "widgets #42",
        "New comment by alice: looks good",
    ]


def test_command_notifier_raises_on_nonzero_exit(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "subprocess.run",
        lambda args, **kwargs: subprocess.CompletedProcess(args, 1, stdout="", stderr="no display"),
    )

    with pytest.raises(DeliveryError, match="no display"):
        CommandNotifier(["notify-send", "{title}"]).deliver(INTENT)


def test_command_notifier_raises_when_binary_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    def missing(args, **kwargs):
        raise FileNotFoundError(args[0])

    monkeypatch.setattr("subprocess.run", missing)

    with pytest.raises(DeliveryError):
        CommandNotifier(["notify-send", "{title}"]).deliver(INTENT)


def test_webhook_payload_carries_title_body_and_id() -> None:
    payload = build_webhook_payload(INTENT)

    assert payload["text"] == "widgets #42: New comment by alice: looks good"
    assert payload["blocks"][0]["text"]["text"] == "*widgets #42*"
    assert payload["blocks"][1]["text"]["text"] == INTENT.body
    assert payload["blocks"][2]["elements"][0]["text"] == f"id: {INTENT.id}"


def test_webhook_notifier_posts_payload(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict = {}

    def fake_post(url, json=None, timeout=None):
        captured.update(url=url, json=json, timeout=timeout)
        return _DummyResponse()

    monkeypatch.setattr("requests.post", fake_post)

    WebhookNotifier("https://hooks.example.test/T000", timeout_seconds=3).deliver(INTENT)

    assert captured["url"] == "https://hooks.example.test/T000"
    assert captured["json"] == build_webhook_payload(INTENT)
    assert captured["timeout"] == 3


def test_webhook_notifier_raises_on_error_status(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("requests.post", lambda *args, **kwargs: _DummyResponse(500, "oops"))

    with pytest.raises(DeliveryError, match="500"):
        WebhookNotifier("https://hooks.example.test/T000").deliver(INTENT)


def test_webhook_notifier_wraps_transport_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def boom(*args, **kwargs):
        raise requests.Timeout("timed out")

    monkeypatch.setattr("requests.post", boom)

    with pytest.raises(DeliveryError, match="timed out"):
        WebhookNotifier("https://hooks.example.test/T000").deliver(INTENT)


def test_log_notifier_prints_rendered_text(capsys: pytest.CaptureFixture[str]) -> None:
    LogNotifier().deliver(INTENT)

    assert capsys.readouterr().out == f"[NOTIFY] {render_notification_text(INTENT)}\n\n"
