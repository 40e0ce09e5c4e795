from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ActivityKind(str, Enum):
    COMMENT = "comment"
    REVIEW = "review"


@dataclass(slots=True, frozen=True)
class Comment:
    id: str
    author: str
    created_at: datetime
    preview: str


@dataclass(slots=True, frozen=True)
class Review:
    id: str
    author: str
    created_at: datetime
    label: str


@dataclass(slots=True)
class PullRequestSnapshot:
    repo_full_name: str
    number: int
    title: str = ""
    url: str = ""
    recent_comments: list[Comment] = field(default_factory=list)
    recent_reviews: list[Review] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def repo_name(self) -> str:
        return self.repo_full_name.rsplit("/", 1)[-1]

    def items(self, kind: ActivityKind) -> list[Comment] | list[Review]:
        if kind is ActivityKind.COMMENT:
            return self.recent_comments
        return self.recent_reviews


@dataclass(slots=True, frozen=True)
class Watermark:
    last_seen_comment_at: datetime | None = None
    last_seen_review_at: datetime | None = None

    def last_seen(self, kind: ActivityKind) -> datetime | None:
        if kind is ActivityKind.COMMENT:
            return self.last_seen_comment_at
        return self.last_seen_review_at

    def is_established(self, kind: ActivityKind) -> bool:
        return self.last_seen(kind) is not None


@dataclass(slots=True, frozen=True)
class NotificationIntent:
    id: str
    title: str
    body: str
