"""
Delivery Sinks — where payloads go once they are due.

A sink is any callable taking the payload string; async sinks are awaited.
Configured via settings.yaml:

    delivery:
      type: "webhook"            # "log" | "webhook"
      webhook_url: "https://example.com/hooks/due"
      timeout_seconds: 10
      max_attempts: 3

A sink that raises leaves the message in the queue, so it is redelivered
after the visibility timeout.
"""
from __future__ import annotations

import structlog
from typing import Optional

import httpx
from tenacity import (
    AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

from config.settings import DeliveryConfig

logger = structlog.get_logger()

WEBHOOK_MAX_BACKOFF = 10


class LogDelivery:
    """Development sink: writes delivered payloads to the log."""

    def __init__(self):
        self.delivered = 0

    async def __call__(self, payload: str) -> None:
        self.delivered += 1
        logger.info("payload_delivered", payload=payload, delivered_total=self.delivered)

    async def close(self) -> None:
        pass


class WebhookDelivery:
    """
    POSTs each payload to a webhook URL.

    Transport errors and 5xx responses are retried with exponential backoff;
    4xx responses fail immediately.
    """

    def __init__(
        self,
        url: str,
        headers: Optional[dict[str, str]] = None,
        timeout_seconds: float = 3.0,
        max_attempts: int = 2,
        backoff_multiplier: float = 0.5,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not url:
            raise ValueError("Webhook delivery requires a url")
        self.url = url
        self.headers = {"Content-Type": "application/json", **(headers or {})}
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.backoff_multiplier = backoff_multiplier
        self.client = client

    @property
    def worst_case_seconds(self) -> float:
        """Longest a single delivery can take: every attempt times out."""
        backoff = sum(
            min(self.backoff_multiplier * 2 ** n, WEBHOOK_MAX_BACKOFF)
            for n in range(self.max_attempts - 1)
        )
        return self.max_attempts * self.timeout_seconds + backoff

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self.client

    async def __call__(self, payload: str) -> None:
        client = await self._get_client()
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_multiplier, max=WEBHOOK_MAX_BACKOFF),
            retry=retry_if_exception_type((httpx.TransportError, _RetryableStatus)),
            reraise=True,
        ):
            with attempt:
                response = await client.post(self.url, content=payload, headers=self.headers)
                if response.status_code >= 500:
                    raise _RetryableStatus(response)
                response.raise_for_status()
        logger.info("payload_posted", url=self.url, status=response.status_code)

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()


class _RetryableStatus(httpx.HTTPStatusError):
    def __init__(self, response: httpx.Response):
        super().__init__(
            f"Webhook returned {response.status_code}",
            request=response.request,
            response=response,
        )


def outlasts_visibility_timeout(delivery, visibility_timeout: float) -> bool:
    """True when one delivery can run longer than a received message stays hidden."""
    worst_case = getattr(delivery, "worst_case_seconds", None)
    return worst_case is not None and worst_case >= visibility_timeout


def create_delivery(config: DeliveryConfig = None):
    """Factory: create the sink for the configured delivery type."""
    config = config or DeliveryConfig()

    if config.type == "webhook":
        return WebhookDelivery(
            url=config.webhook_url,
            headers=config.headers,
            timeout_seconds=config.timeout_seconds,
            max_attempts=config.max_attempts,
        )
    if config.type == "log":
        return LogDelivery()
    raise ValueError(f"Unknown delivery type: {config.type}")
