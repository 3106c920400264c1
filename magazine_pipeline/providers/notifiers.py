"""Notifier implementations.

``LogNotifier`` only writes structured log events and is the default when no
webhook is configured. ``WebhookNotifier`` posts JSON to a chat-platform
bridge over HTTP.
"""

from typing import Any

import httpx
import structlog

from magazine_pipeline.providers.base import Notifier

log = structlog.get_logger(__name__)


class LogNotifier(Notifier):
    """Notifier that records every notification as a log event."""

    async def send_message(self, context_id: str, text: str) -> None:
        log.info("notification_message", context_id=context_id, text=text)

    async def update_label(self, context_id: str, label: str) -> None:
        log.info("notification_label", context_id=context_id, label=label)


class WebhookNotifier(Notifier):
    """Notifier that POSTs events to a webhook.

    Payloads::

        {"type": "message", "context_id": "...", "text": "..."}
        {"type": "label", "context_id": "...", "label": "..."}

    Any transport or HTTP error is logged and swallowed.
    """

    def __init__(
        self,
        webhook_url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the webhook notifier.

        Args:
            webhook_url: Endpoint receiving notification events.
            timeout: Request timeout in seconds.
            client: Optional pre-built client (used by tests to inject a transport).
        """
        self.webhook_url = webhook_url
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def _post(self, payload: dict[str, Any]) -> None:
        try:
            response = await self.client.post(self.webhook_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            log.warning(
                "notification_failed",
                type=payload["type"],
                context_id=payload["context_id"],
                error=str(e),
                exc_info=True,
            )

    async def send_message(self, context_id: str, text: str) -> None:
        await self._post({"type": "message", "context_id": context_id, "text": text})

    async def update_label(self, context_id: str, label: str) -> None:
        await self._post({"type": "label", "context_id": context_id, "label": label})

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "WebhookNotifier":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
