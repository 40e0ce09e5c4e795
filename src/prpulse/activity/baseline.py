from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Iterable, Sequence

from prpulse.models import ActivityKind, PullRequestSnapshot
from prpulse.store import StorageError, WatermarkStore
from prpulse.utils.identity import watermark_key

from .classifier import latest_item

if TYPE_CHECKING:
    from prpulse.service import CancellationToken

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BaselineOutcome:
    seeded: int = 0
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def complete(self) -> bool:
        return not self.errors and not self.cancelled


def advance_watermarks(
    store: WatermarkStore,
    pull_request: PullRequestSnapshot,
    key: str,
    now: datetime,
    kinds: Iterable[ActivityKind] = tuple(ActivityKind),
) -> None:
    """Move each category's watermark to its newest item.

    A category with no items and no watermark yet is seeded with ``now``.
    That makes anything timestamped at or before ``now`` count as already
    seen, so a remote clock running behind ours can hide an item posted
    between this poll and the next one.
    """
    for kind in kinds:
        newest = latest_item(pull_request.items(kind))
        if newest is not None:
            store.set_watermark(key, kind, newest.created_at)
        elif not store.has_watermark(key, kind):
            store.set_watermark(key, kind, now)


def establish_baseline(
    store: WatermarkStore,
    snapshot: Sequence[PullRequestSnapshot],
    now: datetime,
    kinds: Iterable[ActivityKind] = tuple(ActivityKind),
    cancel_token: CancellationToken | None = None,
) -> BaselineOutcome:
    """Silently seed watermarks for every pull request in the snapshot.

    Re-seeding an already seeded pull request never moves it backwards, so an
    interrupted baseline can simply be run again.
    """
    kinds = tuple(kinds)
    outcome = BaselineOutcome()

    for pull_request in snapshot:
        if cancel_token is not None and cancel_token.cancelled:
            outcome.cancelled = True
            logger.info("Baseline cancelled after seeding %d pull requests", outcome.seeded)
            break

        key = watermark_key(pull_request.repo_full_name, pull_request.number)
        try:
            with store.key_lock(key):
                advance_watermarks(store, pull_request, key, now, kinds)
        except StorageError as exc:
            message = f"failed to seed baseline for {key}: {exc}"
            logger.exception(message)
            outcome.errors.append(message)
            continue

        outcome.seeded += 1

    return outcome
