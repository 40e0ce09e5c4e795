from __future__ import annotations

from abc import ABC, abstractmethod

from prpulse.models import NotificationIntent


class DeliveryError(RuntimeError):
    """Raised when a single notification could not be delivered."""


class Notifier(ABC):
    @abstractmethod
    def deliver(self, intent: NotificationIntent) -> None:
        """Show a notification; identical ids must not produce duplicates."""

    def close(self) -> None:
        """Flush pending deliveries and release resources."""
