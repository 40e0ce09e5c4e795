from __future__ import annotations

import logging
import sqlite3
from contextlib import closing, contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator

from prpulse.models import ActivityKind, Watermark
from prpulse.utils.datetime_utils import (
    format_storage_timestamp,
    parse_datetime_utc,
    utc_now,
)

from .base import NOTIFICATION_FAILED, NOTIFICATION_PENDING, StorageError, WatermarkStore

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS watermarks (
    pr_key TEXT NOT NULL,
    kind TEXT NOT NULL,
    last_seen_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (pr_key, kind)
);
CREATE TABLE IF NOT EXISTS engine_state (
    name TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS delivered_notifications (
    intent_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS cycle_lease (
    name TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    expires_at TEXT NOT NULL
);
"""

_LEASE_NAME = "poll_cycle"


class SQLiteWatermarkStore(WatermarkStore):
    """Watermarks in a SQLite file, one row per (pull request, kind).

    Each field is its own row, so a crash between the comment and review
    writes leaves both independently consistent.
    """

    def __init__(self, db_path: str) -> None:
        super().__init__()
        self.db_path = Path(db_path)

    def init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as connection:
            connection.executescript(_SCHEMA)
            connection.commit()

    def get_watermark(self, key: str) -> Watermark:
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT kind, last_seen_at
                FROM watermarks
                WHERE pr_key = ?
                """,
                (key,),
            ).fetchall()

        return _rows_to_watermark(rows)

    def set_watermark(self, key: str, kind: ActivityKind, seen_at: datetime) -> bool:
        value = format_storage_timestamp(seen_at)
        now = format_storage_timestamp(utc_now())

        # Fixed-width UTC text compares in time order, so the WHERE clause
        # rejects regressions inside the same statement as the write.
        with self._connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO watermarks (pr_key, kind, last_seen_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(pr_key, kind) DO UPDATE SET
                    last_seen_at = excluded.last_seen_at,
                    updated_at = excluded.updated_at
                WHERE excluded.last_seen_at > watermarks.last_seen_at
                """,
                (key, kind.value, value, now),
            )
            connection.commit()
            advanced = cursor.rowcount > 0

        if not advanced:
            logger.debug("Ignored non-advancing %s watermark for %s (%s)", kind.value, key, value)
        return advanced

    def list_watermarks(self) -> dict[str, Watermark]:
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT pr_key, kind, last_seen_at
                FROM watermarks
                ORDER BY pr_key, kind
                """
            ).fetchall()

        grouped: dict[str, list[sqlite3.Row]] = {}
        for row in rows:
            grouped.setdefault(row["pr_key"], []).append(row)
        return {key: _rows_to_watermark(key_rows) for key, key_rows in grouped.items()}

    def get_state(self, name: str) -> str | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT value FROM engine_state WHERE name = ?",
                (name,),
            ).fetchone()
        return None if row is None else row["value"]

    def set_state(self, name: str, value: str | None) -> None:
        with self._connect() as connection:
            if value is None:
                connection.execute("DELETE FROM engine_state WHERE name = ?", (name,))
            else:
                connection.execute(
                    """
                    INSERT INTO engine_state (name, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(name) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (name, value, format_storage_timestamp(utc_now())),
                )
            connection.commit()

    def acquire_cycle_lease(self, owner: str, ttl_seconds: int) -> bool:
        now = utc_now()
        with self._connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO cycle_lease (name, owner, expires_at)
                VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    owner = excluded.owner,
                    expires_at = excluded.expires_at
                WHERE cycle_lease.owner = excluded.owner
                    OR cycle_lease.expires_at <= ?
                """,
                (
                    _LEASE_NAME,
                    owner,
                    format_storage_timestamp(now + timedelta(seconds=ttl_seconds)),
                    format_storage_timestamp(now),
                ),
            )
            connection.commit()
            return cursor.rowcount > 0

    def release_cycle_lease(self, owner: str) -> None:
        with self._connect() as connection:
            connection.execute(
                "DELETE FROM cycle_lease WHERE name = ? AND owner = ?",
                (_LEASE_NAME, owner),
            )
            connection.commit()

    def claim_notification(self, intent_id: str) -> bool:
        with self._connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO delivered_notifications (intent_id, status, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(intent_id) DO UPDATE SET
                    status = excluded.status,
                    updated_at = excluded.updated_at
                WHERE delivered_notifications.status = ?
                """,
                (
                    intent_id,
                    NOTIFICATION_PENDING,
                    format_storage_timestamp(utc_now()),
                    NOTIFICATION_FAILED,
                ),
            )
            connection.commit()
            return cursor.rowcount > 0

    def set_notification_status(self, intent_id: str, status: str) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                UPDATE delivered_notifications
                SET status = ?, updated_at = ?
                WHERE intent_id = ?
                """,
                (status, format_storage_timestamp(utc_now()), intent_id),
            )
            connection.commit()

    def notification_status(self, intent_id: str) -> str | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT status FROM delivered_notifications WHERE intent_id = ?",
                (intent_id,),
            ).fetchone()
        return None if row is None else row["status"]

    def prune_notifications(self, older_than: datetime) -> int:
        with self._connect() as connection:
            cursor = connection.execute(
                "DELETE FROM delivered_notifications WHERE updated_at < ?",
                (format_storage_timestamp(older_than),),
            )
            connection.commit()
            return cursor.rowcount

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            with closing(sqlite3.connect(self.db_path, timeout=30)) as connection:
                connection.row_factory = sqlite3.Row
                yield connection
        except sqlite3.Error as exc:
            raise StorageError(f"watermark store {self.db_path} failed: {exc}") from exc


def _rows_to_watermark(rows: list[sqlite3.Row]) -> Watermark:
    values: dict[str, datetime | None] = {}
    for row in rows:
        values[row["kind"]] = parse_datetime_utc(row["last_seen_at"])
    return Watermark(
        last_seen_comment_at=values.get(ActivityKind.COMMENT.value),
        last_seen_review_at=values.get(ActivityKind.REVIEW.value),
    )
