from __future__ import annotations

import logging
import subprocess

from prpulse.models import NotificationIntent

from .base import DeliveryError, Notifier

logger = logging.getLogger(__name__)


class CommandNotifier(Notifier):
    """Delivers desktop notifications by running a command such as ``notify-send``.

    Each argument is a template; ``{title}``, ``{body}`` and ``{id}`` are
    substituted per notification. Arguments are passed without a shell.
    """

    def __init__(self, command: list[str], timeout_seconds: int = 15) -> None:
        if not command:
            raise ValueError("notification command must not be empty")
        self.command = list(command)
        self.timeout_seconds = timeout_seconds

    def build_args(self, intent: NotificationIntent) -> list[str]:
        values = {"title": intent.title, "body": intent.body, "id": intent.id}
        return [_substitute(part, values) for part in self.command]

    def deliver(self, intent: NotificationIntent) -> None:
        args = self.build_args(intent)
        try:
            completed = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise DeliveryError(f"notification command {args[0]!r} failed: {exc}") from exc

        if completed.returncode != 0:
            raise DeliveryError(
                f"notification command {args[0]!r} exited with {completed.returncode}: "
                f"{completed.stderr.strip()}"
            )
        logger.debug("Delivered %s via %s", intent.id, args[0])


def _substitute(template: str, values: dict[str, str]) -> str:
    result = template
    for name, value in values.items():
        result = result.replace("{" + name + "}", value)
    return result
