from __future__ import annotations

import argparse
import logging
import os
import sys
import time
import uuid

from prpulse.config import AppConfig, ConfigError, load_config
from prpulse.logging_config import setup_logging
from prpulse.models import NotificationIntent
from prpulse.notifiers import (
    BackgroundNotifier,
    CommandNotifier,
    DeliveryError,
    IdempotentNotifier,
    LogNotifier,
    Notifier,
    WebhookNotifier,
    render_notification_text,
)
from prpulse.service import CycleInProgressError, CycleResult, PollCycleService
from prpulse.sources import FetchError, PullRequestSource, create_source
from prpulse.store import SQLiteWatermarkStore, StorageError
from prpulse.utils.datetime_utils import format_datetime

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="prpulse",
        description="Poll your open pull requests and notify on new comments and reviews.",
    )
    parser.add_argument(
        "-c",
        "--config",
        default="config.yaml",
        help="Path to config YAML file (default: config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        help="Override config log level (e.g. INFO, DEBUG)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("run", help="Poll once and deliver notifications for new activity")
    subparsers.add_parser("dry-run", help="Poll once and print notifications without saving state")
    subparsers.add_parser("init-db", help="Initialize SQLite schema")
    subparsers.add_parser("status", help="Print baseline flag and stored watermarks")
    subparsers.add_parser(
        "test-notification",
        help="Send one test notification through the configured delivery",
    )

    watch = subparsers.add_parser("watch", help="Poll repeatedly on the configured interval")
    watch.add_argument(
        "--interval",
        type=int,
        help="Override polling.interval_seconds",
    )

    reset = subparsers.add_parser(
        "reset-baseline",
        help="Re-seed watermarks silently on the next poll",
    )
    reset.add_argument(
        "--yes",
        action="store_true",
        help="Required safety flag for resetting the baseline",
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        app_config = load_config(args.config)
    except ConfigError as exc:
        print(f"Config error: {exc}", file=sys.stderr)
        return 2

    log_level = args.log_level or app_config.log_level
    setup_logging(log_level)

    if args.command == "test-notification":
        return _send_test_notification(app_config)

    try:
        store = _build_store(app_config)
        store.init_db()
    except (ConfigError, StorageError) as exc:
        logger.error("Could not open watermark store: %s", exc)
        return 2

    if args.command == "init-db":
        logger.info("Initialized SQLite database at %s", app_config.storage.path)
        return 0

    if args.command == "status":
        return _print_status(store)

    if args.command == "reset-baseline":
        if not args.yes:
            parser.error("reset-baseline requires --yes")
        store.reset_baseline()
        logger.info("Baseline reset; the next poll cycle will re-seed watermarks silently")
        return 0

    token = os.getenv(app_config.github.token_env_var, "").strip() or None
    source = create_source(app_config, token)
    dry_run = args.command == "dry-run"

    notifier = None
    if not dry_run:
        try:
            notifier = _build_notifier(app_config)
        except ConfigError as exc:
            logger.error("%s", exc)
            return 2

    service = PollCycleService(
        store=store,
        notifier=notifier,
        max_workers=app_config.polling.max_workers,
        dry_run=dry_run,
        preview_callback=_dry_run_preview if dry_run else None,
    )

    try:
        if not dry_run:
            service.observe_credential(token, wait=args.command == "watch")
        if args.command == "watch":
            interval = args.interval or app_config.polling.interval_seconds
            return _watch(service, source, app_config, interval)
        return _run_cycle(service, source, app_config)
    except CycleInProgressError as exc:
        logger.error("Poll skipped: %s", exc)
        return 1
    except StorageError as exc:
        logger.error("Watermark store failed: %s", exc)
        return 1
    finally:
        if notifier is not None:
            notifier.close()


def _build_store(app_config: AppConfig) -> SQLiteWatermarkStore:
    if app_config.storage.type != "sqlite":
        raise ConfigError(f"Unsupported storage type: {app_config.storage.type}")
    return SQLiteWatermarkStore(app_config.storage.path)


def _build_notifier(app_config: AppConfig, *, background: bool = True) -> Notifier:
    delivery = app_config.delivery
    inner: Notifier
    if delivery.type == "command":
        inner = CommandNotifier(delivery.command, timeout_seconds=delivery.timeout_seconds)
    elif delivery.type == "webhook":
        webhook_url = os.getenv(delivery.webhook_env_var, "").strip()
        if not webhook_url:
            raise ConfigError(
                f"Missing webhook URL in environment variable {delivery.webhook_env_var}"
            )
        inner = WebhookNotifier(webhook_url, timeout_seconds=delivery.timeout_seconds)
    else:
        inner = LogNotifier()
    if not background:
        return inner
    return BackgroundNotifier(IdempotentNotifier(inner))


def _send_test_notification(app_config: AppConfig) -> int:
    try:
        notifier = _build_notifier(app_config, background=False)
    except ConfigError as exc:
        logger.error("%s", exc)
        return 2

    intent = NotificationIntent(
        id=f"debug-test-{uuid.uuid4().hex}",
        title="PRPulse Test Notification",
        body="This is a test notification.",
    )
    try:
        notifier.deliver(intent)
    except DeliveryError as exc:
        logger.error("Test notification failed: %s", exc)
        return 1
    finally:
        notifier.close()

    logger.info("Sent test notification %s via %s delivery", intent.id, app_config.delivery.type)
    return 0


def _run_cycle(
    service: PollCycleService,
    source: PullRequestSource,
    app_config: AppConfig,
    *,
    supersede: bool = False,
) -> int:
    try:
        permissions = source.probe_permissions()
        if not permissions.has_all_permissions:
            logger.warning("Token is missing permissions: %s", ", ".join(permissions.missing_permissions))
        result = service.run_once(
            source,
            permissions,
            app_config.notifications,
            supersede=supersede,
        )
    except FetchError as exc:
        logger.error("Fetch failed; state left untouched: %s", exc)
        return 1

    _log_result(result)
    return 0 if result.ok else 1


def _watch(
    service: PollCycleService,
    source: PullRequestSource,
    app_config: AppConfig,
    interval_seconds: int,
) -> int:
    logger.info("Polling every %d seconds; press Ctrl+C to stop", interval_seconds)
    try:
        while True:
            _run_cycle(service, source, app_config, supersede=True)
            time.sleep(interval_seconds)
    except KeyboardInterrupt:
        logger.info("Stopping watch loop")
        service.cancel_active_cycle()
    return 0


def _log_result(result: CycleResult) -> None:
    logger.info(
        "Cycle complete | baseline=%s processed=%d notified=%d previewed=%d "
        "suppressed=%d duplicates=%d cancelled=%s errors=%d",
        result.baseline_ran,
        result.processed,
        result.notifications_sent,
        result.previewed,
        result.suppressed_disabled,
        result.skipped_duplicates,
        result.cancelled,
        len(result.errors),
    )


def _print_status(store: SQLiteWatermarkStore) -> int:
    print(f"Baseline established: {'yes' if store.is_baseline_established() else 'no'}")
    watermarks = store.list_watermarks()
    if not watermarks:
        print("No watermarks stored.")
        return 0

    for key, watermark in watermarks.items():
        print(key)
        print(f"  comments seen until: {format_datetime(watermark.last_seen_comment_at)}")
        print(f"  reviews seen until:  {format_datetime(watermark.last_seen_review_at)}")
    return 0


def _dry_run_preview(intent: NotificationIntent) -> None:
    print("[DRY RUN] WOULD NOTIFY:")
    print(render_notification_text(intent))
    print("")


if __name__ == "__main__":
    raise SystemExit(main())
