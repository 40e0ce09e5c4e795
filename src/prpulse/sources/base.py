from __future__ import annotations

from abc import ABC, abstractmethod

from prpulse.models import PullRequestSnapshot
from prpulse.permissions import PermissionsState


class FetchError(RuntimeError):
    """Transient failure fetching pull requests; persisted state is left untouched."""


class PullRequestSource(ABC):
    def __init__(self, source_id: str) -> None:
        self.source_id = source_id

    @abstractmethod
    def fetch(self) -> list[PullRequestSnapshot]:
        """Fetch the current user's open pull requests with recent activity."""

    def current_user_login(self) -> str | None:
        """Login of the token owner, used to drop self-authored activity."""
        return None

    def probe_permissions(self) -> PermissionsState:
        """Report which scopes the credential can read."""
        return PermissionsState()
