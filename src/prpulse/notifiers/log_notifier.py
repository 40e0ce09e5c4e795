from __future__ import annotations

import logging

from prpulse.models import NotificationIntent

from .base import Notifier

logger = logging.getLogger(__name__)


def render_notification_text(intent: NotificationIntent) -> str:
    return f"{intent.title}\n{intent.body}"


class LogNotifier(Notifier):
    """Writes notifications to stdout, or to the log when ``echo`` is off."""

    def __init__(self, *, echo: bool = True, prefix: str = "[NOTIFY]") -> None:
        self.echo = echo
        self.prefix = prefix

    def deliver(self, intent: NotificationIntent) -> None:
        if not self.echo:
            logger.info("Notification %s | %s | %s", intent.id, intent.title, intent.body)
            return
        print(f"{self.prefix} {render_notification_text(intent)}")
        print("")
