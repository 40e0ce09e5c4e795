from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence, TypeVar

from prpulse.models import ActivityKind, Comment, Review
from prpulse.utils.datetime_utils import to_utc
from prpulse.utils.identity import is_self_authored, normalize_login

ActivityItem = TypeVar("ActivityItem", Comment, Review)


@dataclass(slots=True)
class ClassifiedActivity:
    kind: ActivityKind
    new_items: list[Comment] | list[Review] = field(default_factory=list)
    enabled: bool = True

    @property
    def should_notify(self) -> bool:
        return self.enabled and bool(self.new_items)


def latest_item(items: Sequence[ActivityItem]) -> ActivityItem | None:
    """Most recent item by ``created_at``; the earliest in fetch order wins ties."""
    latest: ActivityItem | None = None
    for item in items:
        if latest is None or to_utc(item.created_at) > to_utc(latest.created_at):
            latest = item
    return latest


def classify_activity(
    kind: ActivityKind,
    items: Sequence[ActivityItem],
    last_seen_at: datetime | None,
    current_user_login: str | None,
    *,
    enabled: bool = True,
) -> ClassifiedActivity:
    """Select items newer than ``last_seen_at`` that the current user did not write.

    The subset is computed even when ``enabled`` is false, so callers can
    still advance watermarks for a muted category.
    """
    if last_seen_at is None:
        raise ValueError(f"cannot classify {kind.value} activity without an established watermark")

    threshold = to_utc(last_seen_at)
    login = normalize_login(current_user_login)
    new_items = [
        item
        for item in items
        if to_utc(item.created_at) > threshold and not is_self_authored(item.author, login)
    ]

    return ClassifiedActivity(kind=kind, new_items=new_items, enabled=enabled)
