"""Unit tests for the notification webhook client"""

import httpx
import pytest

from bnpl_scheduler.infrastructure.clients.notifications import NotificationClient


async def test_send_event_success():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(202)

    client = NotificationClient(max_retries=3, backoff_base=0.0, transport=httpx.MockTransport(handler))
    await client.send_event("http://hooks.test/notify", {"event": "installment.completed"})

    assert len(calls) == 1


async def test_send_event_retries_then_succeeds():
    responses = iter([httpx.Response(503), httpx.Response(503), httpx.Response(200)])

    client = NotificationClient(
        max_retries=3,
        backoff_base=0.0,
        transport=httpx.MockTransport(lambda request: next(responses)),
    )
    await client.send_event("http://hooks.test/notify", {"event": "installment.retry_scheduled"})


async def test_send_event_raises_after_retries_exhausted():
    attempts = []

    def handler(request):
        attempts.append(request)
        return httpx.Response(500)

    client = NotificationClient(max_retries=2, backoff_base=0.0, transport=httpx.MockTransport(handler))

    with pytest.raises(httpx.HTTPStatusError):
        await client.send_event("http://hooks.test/notify", {"event": "installment.final_failure"})

    assert len(attempts) == 2
