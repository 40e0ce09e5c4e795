from __future__ import annotations

from prpulse.models import ActivityKind, Comment, NotificationIntent, PullRequestSnapshot, Review

from .classifier import ClassifiedActivity, latest_item


def compose_notification(
    pull_request: PullRequestSnapshot,
    activity: ClassifiedActivity,
    key: str,
) -> NotificationIntent:
    """Collapse one category's new items into a single notification.

    The id combines kind, watermark key and the latest item's id, so composing
    the same subset twice always yields the same id.
    """
    latest = latest_item(activity.new_items)
    if latest is None:
        raise ValueError(f"no new {activity.kind.value} activity to notify about for {key}")

    count = len(activity.new_items)
    if activity.kind is ActivityKind.COMMENT:
        body = _comment_body(latest, count)
    else:
        body = _review_body(latest, count)

    return NotificationIntent(
        id=f"{activity.kind.value}-{key}-{latest.id}",
        title=f"{pull_request.repo_name} #{pull_request.number}",
        body=body,
    )


def _comment_body(latest: Comment, count: int) -> str:
    if count == 1:
        return f"New comment by {latest.author}: {latest.preview}"
    return f"{count} new comments. Latest by {latest.author}: {latest.preview}"


def _review_body(latest: Review, count: int) -> str:
    if count == 1:
        return f"{latest.label} review by {latest.author}"
    return f"{count} new reviews. Latest: {latest.label} by {latest.author}"
