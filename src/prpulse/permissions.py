"""Capability vector describing which API scopes the current token grants.

Presentation code reads it to decide what to render; the poll cycle reads it
to decide whether comment and review data can be trusted at all. A scope the
token cannot read comes back from the API as an empty list, which is
indistinguishable from "no activity", so such categories are skipped rather
than diffed.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Mapping

from prpulse.models import ActivityKind


class PermissionStatus(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    UNKNOWN = "unknown"


_DISPLAY_NAMES = {
    "pull_requests": "Pull Requests",
    "commit_statuses": "CI/CD Status",
    "reviews": "Reviews",
    "comments": "Comments",
}


@dataclass(slots=True, frozen=True)
class PermissionsState:
    can_read_pull_requests: bool = True
    can_read_commit_statuses: bool = True
    can_read_reviews: bool = True
    can_read_comments: bool = True

    @property
    def has_all_permissions(self) -> bool:
        return (
            self.can_read_pull_requests
            and self.can_read_commit_statuses
            and self.can_read_reviews
            and self.can_read_comments
        )

    @property
    def has_minimum_permissions(self) -> bool:
        return self.can_read_pull_requests

    @property
    def missing_permissions(self) -> list[str]:
        missing: list[str] = []
        if not self.can_read_pull_requests:
            missing.append(_DISPLAY_NAMES["pull_requests"])
        if not self.can_read_commit_statuses:
            missing.append(_DISPLAY_NAMES["commit_statuses"])
        if not self.can_read_reviews:
            missing.append(_DISPLAY_NAMES["reviews"])
        if not self.can_read_comments:
            missing.append(_DISPLAY_NAMES["comments"])
        return missing

    def can_read(self, kind: ActivityKind) -> bool:
        if kind is ActivityKind.COMMENT:
            return self.can_read_comments
        return self.can_read_reviews

    def readable_kinds(self) -> tuple[ActivityKind, ...]:
        return tuple(kind for kind in ActivityKind if self.can_read(kind))

    @classmethod
    def from_probe(cls, statuses: Mapping[str, PermissionStatus]) -> PermissionsState:
        """Only an explicit ``granted`` counts; unknown scopes are treated as missing."""

        def granted(scope: str) -> bool:
            return statuses.get(scope) is PermissionStatus.GRANTED

        return cls(
            can_read_pull_requests=granted("pull_requests"),
            can_read_commit_statuses=granted("commit_statuses"),
            can_read_reviews=granted("reviews"),
            can_read_comments=granted("comments"),
        )
