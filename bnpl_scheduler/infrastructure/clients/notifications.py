"""Notification webhook client with exponential backoff retry logic"""

import asyncio
from typing import Any, Dict

import httpx

from bnpl_scheduler.config import settings
from bnpl_scheduler.infrastructure.observability.metrics import notification_failure_counter


class NotificationClient:
    """Client for handing customer notification events to the delivery service"""

    def __init__(
        self,
        max_retries: int | None = None,
        backoff_base: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.max_retries = max_retries or settings.notification_max_retries
        self.backoff_base = settings.notification_backoff_base if backoff_base is None else backoff_base
        self.transport = transport

    async def send_event(self, target_url: str, payload: Dict[str, Any]) -> None:
        """
        Deliver one notification event with retry logic.

        Retry strategy:
        - Exponential backoff: 1s, 2s, 4s, 8s (base * 2^attempt)
        - Retries on HTTP errors and network failures
        - Re-raises the last error once retries are exhausted
        """
        attempt = 0
        async with httpx.AsyncClient(transport=self.transport) as client:
            while True:
                try:
                    response = await client.post(target_url, json=payload, timeout=10.0)
                    response.raise_for_status()
                    return

                except (httpx.HTTPStatusError, httpx.RequestError):
                    attempt += 1
                    notification_failure_counter.inc()

                    if attempt >= self.max_retries:
                        raise

                    await asyncio.sleep(self.backoff_base * (2 ** (attempt - 1)))
