"""Notifier implementations."""

from .base import DeliveryError, Notifier
from .command_notifier import CommandNotifier
from .dispatch import BackgroundNotifier, IdempotentNotifier
from .log_notifier import LogNotifier, render_notification_text
from .webhook import WebhookNotifier, build_webhook_payload

__all__ = [
    "BackgroundNotifier",
    "CommandNotifier",
    "DeliveryError",
    "IdempotentNotifier",
    "LogNotifier",
    "Notifier",
    "WebhookNotifier",
    "build_webhook_payload",
    "render_notification_text",
]
