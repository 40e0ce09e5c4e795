"""Pure activity diffing: classification, composition and watermark seeding."""

from .baseline import BaselineOutcome, advance_watermarks, establish_baseline
from .classifier import ClassifiedActivity, classify_activity, latest_item
from .composer import compose_notification

__all__ = [
    "BaselineOutcome",
    "ClassifiedActivity",
    "advance_watermarks",
    "classify_activity",
    "compose_notification",
    "establish_baseline",
    "latest_item",
]
