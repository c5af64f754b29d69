import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from reconciler.config import Settings
from reconciler.main import app
from reconciler.messaging import RetryQueue
from reconciler.results import HandlerResult, SkipReason
from reconciler.signature import SIGNATURE_HEADER, compute_signature

WEBHOOK_URL = "https://shop.test/api/webhooks/square"

BODY = json.dumps(
    {
        "merchant_id": "MERCHANT_1",
        "type": "payment.updated",
        "event_id": "evt-1",
        "created_at": "2026-10-18T12:00:00Z",
        "data": {"type": "payment", "id": "pay_1", "object": {"payment": {"id": "pay_1", "order_id": "sq_1"}}},
    }
).encode("utf-8")


@pytest.fixture
def services():
    services = MagicMock()
    services.settings = Settings(square_webhook_signature_key="sig_key", square_webhook_url=WEBHOOK_URL)
    services.reconciler.process = AsyncMock(return_value=HandlerResult.applied("order-1"))
    services.retry_queue = None
    app.state.services = services
    return services


@pytest.fixture
def client(services):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


def signed_headers(body: bytes = BODY) -> dict:
    return {SIGNATURE_HEADER: compute_signature(body, "sig_key", WEBHOOK_URL), "content-type": "application/json"}


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_signed_webhook_is_processed(client, services):
    response = await client.post("/api/webhooks/square", content=BODY, headers=signed_headers())

    assert response.status_code == 200
    assert response.json()["outcome"] == "applied"
    services.reconciler.process.assert_awaited_once()
    payload = services.reconciler.process.await_args.args[0]
    assert payload.event_id == "evt-1"
    assert payload.type == "payment.updated"


@pytest.mark.asyncio
async def test_bad_signature_is_rejected(client, services):
    headers = {SIGNATURE_HEADER: "bm90LXRoZS1yaWdodC1zaWduYXR1cmU=", "content-type": "application/json"}

    response = await client.post("/api/webhooks/square", content=BODY, headers=headers)

    assert response.status_code == 401
    services.reconciler.process.assert_not_called()


@pytest.mark.asyncio
async def test_missing_signature_is_rejected(client, services):
    response = await client.post("/api/webhooks/square", content=BODY)

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_signature_not_checked_without_key(client, services):
    services.settings = Settings(square_webhook_signature_key=None)

    response = await client.post("/api/webhooks/square", content=BODY)

    assert response.status_code == 200


@pytest.mark.asyncio
async def test_malformed_payload_is_rejected(client, services):
    body = b'{"type": "payment.updated"}'

    response = await client.post("/api/webhooks/square", content=body, headers=signed_headers(body))

    assert response.status_code == 400
    services.reconciler.process.assert_not_called()


@pytest.mark.asyncio
async def test_skipped_event_is_acknowledged(client, services):
    services.reconciler.process.return_value = HandlerResult.skipped(SkipReason.DUPLICATE_EVENT)

    response = await client.post("/api/webhooks/square", content=BODY, headers=signed_headers())

    assert response.status_code == 200
    assert response.json()["reason"] == "duplicate_event"


@pytest.mark.asyncio
async def test_transient_failure_asks_for_redelivery(client, services):
    services.reconciler.process.return_value = HandlerResult.transient("db down")

    response = await client.post("/api/webhooks/square", content=BODY, headers=signed_headers())

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_transient_failure_is_queued_when_enabled(client, services):
    services.reconciler.process.return_value = HandlerResult.transient("db down")
    services.retry_queue = AsyncMock(spec=RetryQueue)

    response = await client.post("/api/webhooks/square", content=BODY, headers=signed_headers())

    assert response.status_code == 200
    assert response.json()["queued"] is True
    services.retry_queue.enqueue_retry.assert_awaited_once()
    queued = services.retry_queue.enqueue_retry.await_args.args[0]
    assert queued["event_id"] == "evt-1"


@pytest.mark.asyncio
async def test_permanent_failure_is_not_redelivered(client, services):
    services.reconciler.process.return_value = HandlerResult.permanent("KeyError: 'x'")

    response = await client.post("/api/webhooks/square", content=BODY, headers=signed_headers())

    assert response.status_code == 200
    assert response.json()["outcome"] == "permanent_failure"
