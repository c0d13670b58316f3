"""Notification transports for release alerts.

The dispatcher only depends on ``Notifier.send``; the webhook notifier posts
the alert payload as JSON, the log notifier writes it to the application log.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from catalog_monitor.config import Settings
from catalog_monitor.notify.formatters import format_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of a single delivery attempt."""

    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


def build_action_url(action_base_url: str, token: str, action: str) -> str:
    separator = "&" if "?" in action_base_url else "?"
    return f"{action_base_url}{separator}{urlencode({'token': token, 'action': action})}"


def build_action_urls(action_base_url: str, tokens: Dict[str, str]) -> Dict[str, str]:
    """Map each action to its signed link."""
    return {
        action: build_action_url(action_base_url, token, action)
        for action, token in tokens.items()
    }


class Notifier(ABC):
    """Delivers one alert to the creator."""

    channel: str = ""

    @abstractmethod
    async def send(self, alert_payload: Dict[str, Any], action_urls: Dict[str, str]) -> DeliveryResult:
        """
        Deliver an alert.

        Args:
            alert_payload: Payload from format_alert_payload()
            action_urls: Signed confirm/dispute links keyed by action

        Returns:
            DeliveryResult; transport errors are reported here, not raised
        """
        pass

    async def close(self) -> None:
        return None


class WebhookNotifier(Notifier):
    """Posts alerts as JSON to a configured webhook URL."""

    channel = "webhook"

    def __init__(self, webhook_url: str, client: Optional[httpx.AsyncClient] = None):
        self.webhook_url = webhook_url
        self._http_client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=30.0)
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def send(self, alert_payload: Dict[str, Any], action_urls: Dict[str, str]) -> DeliveryResult:
        if not self.webhook_url:
            return DeliveryResult(success=False, error="Notification webhook URL is not configured")

        body = dict(alert_payload)
        body["actions"] = action_urls
        body["text"] = format_text(alert_payload, action_urls)

        client = await self._get_client()
        try:
            response = await client.post(self.webhook_url, json=body)
        except httpx.HTTPError as e:
            logger.warning(f"Webhook delivery failed for alert {alert_payload.get('alert_id')}: {e}")
            return DeliveryResult(success=False, error=f"{type(e).__name__}: {e}")

        if response.status_code >= 400:
            return DeliveryResult(
                success=False,
                error=f"HTTP {response.status_code}: {response.text[:200]}",
            )

        message_id = response.headers.get("x-message-id")
        if message_id is None:
            try:
                data = response.json()
            except ValueError:
                data = None
            if isinstance(data, dict) and data.get("id") is not None:
                message_id = str(data["id"])

        return DeliveryResult(success=True, message_id=message_id)


class LogNotifier(Notifier):
    """Writes alerts to the log. Used for local development."""

    channel = "log"

    async def send(self, alert_payload: Dict[str, Any], action_urls: Dict[str, str]) -> DeliveryResult:
        logger.info(
            "Release alert for creator %s:\n%s",
            alert_payload.get("creator_id"),
            format_text(alert_payload, action_urls),
        )
        return DeliveryResult(success=True, message_id=f"log-{alert_payload.get('alert_id')}")


def create_notifier(settings: Settings) -> Notifier:
    """Build the notifier for the configured alert channel."""
    if settings.alert_channel == "log":
        return LogNotifier()
    if settings.alert_channel == "webhook":
        return WebhookNotifier(settings.notification_webhook_url)
    raise ValueError(f"Unknown alert channel: {settings.alert_channel}")
