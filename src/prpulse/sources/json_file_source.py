"""Pull request snapshots read from a JSON file.

Accepts either a list of pull requests or a mapping with ``pull_requests``
and optional ``current_user`` and ``permissions`` keys. Used for offline
dry runs and for replaying a captured snapshot.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from prpulse.config import AppConfig
from prpulse.models import Comment, PullRequestSnapshot, Review
from prpulse.permissions import PermissionsState, PermissionStatus
from prpulse.utils.datetime_utils import parse_datetime_utc

from .base import FetchError, PullRequestSource
from .registry import register_source


class JsonFileSource(PullRequestSource):
    def __init__(self, path: str | Path) -> None:
        super().__init__(source_id="json_file")
        self.path = Path(path)

    def fetch(self) -> list[PullRequestSnapshot]:
        document = self._load()
        raw_pulls = document.get("pull_requests", [])
        if not isinstance(raw_pulls, list):
            raise FetchError(f"{self.path}: pull_requests must be a list")
        return [_to_snapshot(raw, index) for index, raw in enumerate(raw_pulls, start=1)]

    def current_user_login(self) -> str | None:
        login = str(self._load().get("current_user") or "").strip()
        return login or None

    def probe_permissions(self) -> PermissionsState:
        raw = self._load().get("permissions")
        if not isinstance(raw, dict):
            return PermissionsState()
        statuses = {
            scope: PermissionStatus.GRANTED if bool(raw.get(scope, True)) else PermissionStatus.DENIED
            for scope in ("pull_requests", "commit_statuses", "reviews", "comments")
        }
        return PermissionsState.from_probe(statuses)

    def _load(self) -> dict[str, Any]:
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                parsed = json.load(handle)
        except (OSError, ValueError) as exc:
            raise FetchError(f"could not read snapshot file {self.path}: {exc}") from exc

        if isinstance(parsed, list):
            return {"pull_requests": parsed}
        if not isinstance(parsed, dict):
            raise FetchError(f"{self.path}: snapshot root must be a list or mapping")
        return parsed


def _to_snapshot(raw: Any, index: int) -> PullRequestSnapshot:
    if not isinstance(raw, dict):
        raise FetchError(f"pull request entry #{index} must be a mapping")

    repo_full_name = str(raw.get("repo_full_name", "")).strip()
    number = raw.get("number")
    if not repo_full_name or isinstance(number, bool) or not isinstance(number, int):
        raise FetchError(f"pull request entry #{index} missing repo_full_name or number")

    comments = [
        Comment(
            id=str(item.get("id", "")),
            author=str(item.get("author", "")),
            created_at=_required_datetime(item, index),
            preview=str(item.get("preview", item.get("body", ""))),
        )
        for item in raw.get("comments", []) or []
    ]
    reviews = [
        Review(
            id=str(item.get("id", "")),
            author=str(item.get("author", "")),
            created_at=_required_datetime(item, index),
            label=str(item.get("label", "Commented")),
        )
        for item in raw.get("reviews", []) or []
    ]

    return PullRequestSnapshot(
        repo_full_name=repo_full_name,
        number=number,
        title=str(raw.get("title", "")),
        url=str(raw.get("url", "")),
        recent_comments=comments,
        recent_reviews=reviews,
        extra={
            key: value
            for key, value in raw.items()
            if key not in {"repo_full_name", "number", "title", "url", "comments", "reviews"}
        },
    )


def _required_datetime(item: dict[str, Any], index: int):
    value = parse_datetime_utc(item.get("created_at"))
    if value is None:
        raise FetchError(f"pull request entry #{index} has activity without created_at")
    return value


@register_source("json_file")
def _build_json_file_source(app_config: AppConfig, token: str | None) -> PullRequestSource:
    if not app_config.source.path:
        raise FetchError("json_file source requires source.path")
    return JsonFileSource(app_config.source.path)
