"""Webhook delivery of engine events."""

import logging
from typing import Callable, Dict, Optional

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from runguard.events import Event, EventBus, asdict
from runguard.notifications.models import NotificationConfig, NotificationStatus

logger = logging.getLogger(__name__)


class WebhookNotifier:
    """Forwards engine events to an HTTP webhook as JSON."""

    def __init__(
        self,
        config: NotificationConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        wait=None,
        max_attempts: int = 5,
    ):
        """Initialize webhook notifier.

        Args:
            config: Notification configuration
            transport: Optional httpx transport (tests use httpx.MockTransport)
            wait: tenacity wait strategy between attempts (default exponential 1-10s)
            max_attempts: Delivery attempts before giving up
        """
        self.config = config
        self._transport = transport
        self._wait = wait if wait is not None else wait_exponential(min=1, max=10)
        self._max_attempts = max_attempts

    @property
    def active(self) -> bool:
        return bool(self.config.enabled and self.config.webhook_enabled and self.config.webhook_url)

    def attach(self, bus: EventBus) -> Callable[[], None]:
        """Subscribe to the bus; returns the unsubscribe callable."""
        return bus.subscribe(self.handle_event, self.config.event_types)

    async def handle_event(self, event: Event) -> None:
        await self.send(event)

    async def send(self, event: Event) -> NotificationStatus:
        """Deliver one event, retrying transient failures.

        Args:
            event: Engine event to deliver

        Returns:
            NotificationStatus with delivery result. Never raises.
        """
        if not self.active:
            logger.debug("Webhook notifications disabled, skipping")
            return NotificationStatus(event_type=event.type, success=False, error="Webhook notifications disabled")

        payload = asdict(event)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=self._wait,
                reraise=True,
            ):
                with attempt:
                    response = await self._post(payload, event.type)
        except httpx.HTTPError as e:
            logger.error(f"Failed to deliver {event.type} webhook after {self._max_attempts} attempts: {e}")
            return NotificationStatus(event_type=event.type, success=False, error=str(e))

        logger.info(f"Delivered {event.type} webhook ({response.status_code})")
        return NotificationStatus(event_type=event.type, success=True, status_code=response.status_code)

    async def _post(self, payload: Dict, event_type: str) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.config.webhook_timeout_seconds, transport=self._transport) as c:
            r = await c.post(self.config.webhook_url, json=payload, headers=self._headers(event_type))
            r.raise_for_status()
            return r

    def _headers(self, event_type: str) -> Dict[str, str]:
        headers = {"X-Runguard-Event": event_type}
        if self.config.webhook_token:
            headers["Authorization"] = f"Bearer {self.config.webhook_token}"
        return headers
