from __future__ import annotations

import requests

from prpulse.models import NotificationIntent

from .base import DeliveryError, Notifier


class WebhookNotifier(Notifier):
    """Posts notifications to a Slack-compatible incoming webhook."""

    def __init__(self, webhook_url: str, timeout_seconds: int = 15) -> None:
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds

    def deliver(self, intent: NotificationIntent) -> None:
        payload = build_webhook_payload(intent)
        try:
            response = requests.post(
                self.webhook_url,
                json=payload,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise DeliveryError(f"webhook request failed: {exc}") from exc
        if response.status_code >= 400:
            raise DeliveryError(
                f"webhook returned {response.status_code}: {response.text}"
            )


def build_webhook_payload(intent: NotificationIntent) -> dict:
    return {
        "text": f"{intent.title}: {intent.body}",
        "blocks": [
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"*{intent.title}*",
                },
            },
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": intent.body,
                },
            },
            {
                "type": "context",
                "elements": [
                    {
                        "type": "mrkdwn",
                        "text": f"id: {intent.id}",
                    },
                ],
            },
        ],
    }
