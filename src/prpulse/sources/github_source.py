from __future__ import annotations

import logging
import re
from typing import Any

import requests

from prpulse.config import AppConfig, GitHubSettings
from prpulse.models import Comment, PullRequestSnapshot, Review
from prpulse.permissions import PermissionsState, PermissionStatus
from prpulse.utils.datetime_utils import parse_datetime_utc

from .base import FetchError, PullRequestSource
from .registry import register_source

logger = logging.getLogger(__name__)

_USER_AGENT = "prpulse/0.1"
_SEARCH_QUERY = "is:open is:pr author:@me archived:false"
_PREVIEW_LENGTH = 120
_PAGE_SIZE = 100
_MULTISPACE = re.compile(r"\s+")
_DENIED_STATUSES = {401, 403, 404}

_REVIEW_LABELS = {
    "APPROVED": "Approved",
    "CHANGES_REQUESTED": "Changes requested",
    "COMMENTED": "Commented",
    "DISMISSED": "Dismissed",
}


class GitHubSource(PullRequestSource):
    """Fetches the token owner's open pull requests from the GitHub REST API."""

    def __init__(self, settings: GitHubSettings, token: str | None) -> None:
        super().__init__(source_id="github")
        self.api_url = settings.api_url.rstrip("/")
        self.timeout_seconds = settings.timeout_seconds
        self.max_comments = settings.max_comments
        self.max_reviews = settings.max_reviews
        self._token = (token or "").strip()
        self._login: str | None = None

    def fetch(self) -> list[PullRequestSnapshot]:
        if not self._token:
            raise FetchError("GitHub token is not configured")

        search = self._get_json(
            "/search/issues",
            params={"q": _SEARCH_QUERY, "sort": "updated", "order": "desc", "per_page": 50},
        )
        items = search.get("items", []) if isinstance(search, dict) else []

        snapshots: list[PullRequestSnapshot] = []
        for item in items:
            repo_full_name = _repo_full_name(item)
            number = item.get("number")
            if not repo_full_name or not isinstance(number, int):
                logger.warning("Skipping search result without repository or number: %r", item.get("url"))
                continue

            comments = self._fetch_comments(repo_full_name, number)
            reviews = self._fetch_reviews(repo_full_name, number)
            snapshots.append(
                PullRequestSnapshot(
                    repo_full_name=repo_full_name,
                    number=number,
                    title=str(item.get("title", "")),
                    url=str(item.get("html_url", "")),
                    recent_comments=comments,
                    recent_reviews=reviews,
                    extra={
                        "draft": bool(item.get("draft", False)),
                        "updated_at": item.get("updated_at"),
                    },
                )
            )

        logger.info("GitHub returned %d open pull requests", len(snapshots))
        return snapshots

    def current_user_login(self) -> str | None:
        if self._login is not None:
            return self._login
        if not self._token:
            return None

        try:
            payload = self._get_json("/user")
        except FetchError as exc:
            logger.warning("Could not resolve current GitHub user: %s", exc)
            return None

        login = str(payload.get("login", "")).strip() if isinstance(payload, dict) else ""
        self._login = login or None
        return self._login

    def probe_permissions(self) -> PermissionsState:
        statuses: dict[str, PermissionStatus] = {}

        search = self._probe(
            "/search/issues",
            params={"q": _SEARCH_QUERY, "per_page": 1},
        )
        statuses["pull_requests"] = search[0]
        items = search[1].get("items", []) if isinstance(search[1], dict) else []

        if statuses["pull_requests"] is not PermissionStatus.GRANTED or not items:
            # Nothing to probe against; per-repository scopes cannot be disproven.
            fallback = (
                PermissionStatus.GRANTED
                if statuses["pull_requests"] is PermissionStatus.GRANTED
                else PermissionStatus.UNKNOWN
            )
            for scope in ("comments", "reviews", "commit_statuses"):
                statuses[scope] = fallback
            return PermissionsState.from_probe(statuses)

        repo_full_name = _repo_full_name(items[0])
        number = items[0].get("number")
        statuses["comments"] = self._probe(
            f"/repos/{repo_full_name}/issues/{number}/comments", params={"per_page": 1}
        )[0]
        statuses["reviews"] = self._probe(
            f"/repos/{repo_full_name}/pulls/{number}/reviews", params={"per_page": 1}
        )[0]

        pull_status, pull_payload = self._probe(f"/repos/{repo_full_name}/pulls/{number}")
        head_sha = ""
        if isinstance(pull_payload, dict):
            head_sha = str((pull_payload.get("head") or {}).get("sha", ""))
        if pull_status is PermissionStatus.GRANTED and head_sha:
            statuses["commit_statuses"] = self._probe(
                f"/repos/{repo_full_name}/commits/{head_sha}/status"
            )[0]
        else:
            statuses["commit_statuses"] = PermissionStatus.UNKNOWN

        return PermissionsState.from_probe(statuses)

    def _fetch_comments(self, repo_full_name: str, number: int) -> list[Comment]:
        comments: list[Comment] = []
        for raw in self._get_scoped_pages(f"/repos/{repo_full_name}/issues/{number}/comments"):
            created_at = parse_datetime_utc(raw.get("created_at"))
            if created_at is None:
                continue
            comments.append(
                Comment(
                    id=str(raw.get("id", "")),
                    author=_login_of(raw),
                    created_at=created_at,
                    preview=_preview(str(raw.get("body") or "")),
                )
            )
        return comments[-self.max_comments :]

    def _fetch_reviews(self, repo_full_name: str, number: int) -> list[Review]:
        reviews: list[Review] = []
        for raw in self._get_scoped_pages(f"/repos/{repo_full_name}/pulls/{number}/reviews"):
            state = str(raw.get("state", "")).upper()
            if state == "PENDING":
                continue
            submitted_at = parse_datetime_utc(raw.get("submitted_at"))
            if submitted_at is None:
                continue
            reviews.append(
                Review(
                    id=str(raw.get("id", "")),
                    author=_login_of(raw),
                    created_at=submitted_at,
                    label=_REVIEW_LABELS.get(state, state.replace("_", " ").capitalize()),
                )
            )
        return reviews[-self.max_reviews :]

    def _get(self, path: str, params: dict[str, Any] | None = None) -> requests.Response:
        try:
            return requests.get(
                f"{self.api_url}{path}",
                params=params,
                headers=self._headers(),
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise FetchError(f"GitHub request {path} failed: {exc}") from exc

    def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        response = self._get(path, params)
        if response.status_code >= 400:
            raise FetchError(f"GitHub {path} returned {response.status_code}: {response.text[:200]}")
        try:
            return response.json()
        except ValueError as exc:
            raise FetchError(f"GitHub {path} returned invalid JSON") from exc

    def _get_scoped_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """Like _get_json, but a scope the token lacks reads as no activity."""
        response = self._get(path, params)
        if response.status_code in _DENIED_STATUSES:
            logger.debug("GitHub %s denied with %d; treating as empty", path, response.status_code)
            return []
        if response.status_code >= 400:
            raise FetchError(f"GitHub {path} returned {response.status_code}: {response.text[:200]}")
        try:
            return response.json()
        except ValueError as exc:
            raise FetchError(f"GitHub {path} returned invalid JSON") from exc

    def _get_scoped_pages(self, path: str) -> list[dict[str, Any]]:
        """Every page of a list endpoint, in API order.

        GitHub lists comments and reviews oldest first, so the newest activity
        sits on the last page.
        """
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            payload = self._get_scoped_json(path, params={"per_page": _PAGE_SIZE, "page": page})
            if not isinstance(payload, list):
                break
            items.extend(raw for raw in payload if isinstance(raw, dict))
            if len(payload) < _PAGE_SIZE:
                break
            page += 1
        return items

    def _probe(
        self, path: str, params: dict[str, Any] | None = None
    ) -> tuple[PermissionStatus, Any]:
        response = self._get(path, params)
        if response.status_code in _DENIED_STATUSES:
            return PermissionStatus.DENIED, None
        if response.status_code >= 400:
            return PermissionStatus.UNKNOWN, None
        try:
            return PermissionStatus.GRANTED, response.json()
        except ValueError:
            return PermissionStatus.GRANTED, None

    def _headers(self) -> dict[str, str]:
        return {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {self._token}",
            "User-Agent": _USER_AGENT,
            "X-GitHub-Api-Version": "2022-11-28",
        }


def _repo_full_name(item: dict[str, Any]) -> str:
    repository_url = str(item.get("repository_url", "")).rstrip("/")
    marker = "/repos/"
    if marker not in repository_url:
        return ""
    return repository_url.split(marker, 1)[1]


def _login_of(raw: dict[str, Any]) -> str:
    user = raw.get("user") or {}
    return str(user.get("login", "") if isinstance(user, dict) else "") or "unknown"


def _preview(body: str) -> str:
    text = _MULTISPACE.sub(" ", body).strip()
    if len(text) > _PREVIEW_LENGTH:
        return f"{text[: _PREVIEW_LENGTH - 3]}..."
    return text


@register_source("github")
def _build_github_source(app_config: AppConfig, token: str | None) -> PullRequestSource:
    return GitHubSource(app_config.github, token)
