import json
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select

from reconciler.alerts import AlertService, retry_delay
from reconciler.mail import MailClient, MailMessage
from reconciler.models import AlertPriority, AlertStatus, AlertType, EmailAlert, OrderStatus, utcnow


class FakeResend:
    """Resend stand-in: records requests, fails while ``failing`` is set."""

    def __init__(self, failing=False):
        self.failing = failing
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        if self.failing:
            return httpx.Response(500, json={"message": "provider unavailable"})
        return httpx.Response(200, json={"id": f"msg_{len(self.requests)}"})


@pytest.fixture
def resend():
    return FakeResend()


@pytest.fixture
def alert_service(session_factory, settings, resend):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(resend))
    return AlertService(session_factory, MailClient("re_test", http_client), settings)


async def _alerts(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(EmailAlert).order_by(EmailAlert.created_at))
        return result.scalars().all()


def test_retry_delay_is_exponential_and_capped():
    assert retry_delay(0, 5, 300) == 5
    assert retry_delay(1, 5, 300) == 10
    assert retry_delay(3, 5, 300) == 40
    assert retry_delay(10, 5, 300) == 300


@pytest.mark.asyncio
async def test_new_order_alert_is_recorded_as_sent(alert_service, create_order, session_factory, resend):
    order = await create_order()

    result = await alert_service.send_new_order_alert(order)

    assert result.success
    assert result.message_id == "msg_1"
    [alert] = await _alerts(session_factory)
    assert alert.type is AlertType.NEW_ORDER
    assert alert.priority is AlertPriority.HIGH
    assert alert.status is AlertStatus.SENT
    assert alert.message_id == "msg_1"
    assert alert.recipient_email == "admin@shop.test"
    assert alert.related_order_id == order.id
    assert alert.sent_at is not None
    assert resend.requests[0]["to"] == ["admin@shop.test"]


@pytest.mark.asyncio
async def test_customer_confirmation_goes_to_customer(alert_service, create_order, resend):
    order = await create_order()

    await alert_service.send_customer_order_confirmation(order)

    assert resend.requests[0]["to"] == ["ada@example.com"]
    assert "Order Confirmation" in resend.requests[0]["subject"]


@pytest.mark.asyncio
async def test_failed_send_is_recorded(alert_service, create_order, session_factory, resend):
    resend.failing = True
    order = await create_order()

    result = await alert_service.send_payment_failed_alert(order, "card declined")

    assert not result.success
    assert result.retryable
    [alert] = await _alerts(session_factory)
    assert alert.status is AlertStatus.FAILED
    assert alert.priority is AlertPriority.CRITICAL
    assert alert.retry_count == 1
    assert "provider unavailable" in alert.error_message
    assert alert.failed_at is not None


@pytest.mark.asyncio
async def test_status_change_notifies_admin_only_for_notable_statuses(
    alert_service, create_order, session_factory, resend
):
    processing = await create_order(square_order_id="sq_a", status=OrderStatus.PROCESSING)
    await alert_service.send_order_status_change_alert(processing, OrderStatus.PENDING)
    assert len(resend.requests) == 1

    completed = await create_order(square_order_id="sq_b", status=OrderStatus.COMPLETED)
    await alert_service.send_order_status_change_alert(completed, OrderStatus.READY)
    assert len(resend.requests) == 3
    assert resend.requests[1]["to"] == ["ada@example.com"]
    assert resend.requests[2]["to"] == ["admin@shop.test"]

    completed_alerts = [a for a in await _alerts(session_factory) if a.related_order_id == completed.id]
    assert len(completed_alerts) == 2
    for alert in completed_alerts:
        assert alert.type is AlertType.ORDER_STATUS_CHANGE
        assert alert.alert_metadata["previousStatus"] == "READY"
        assert alert.alert_metadata["newStatus"] == "COMPLETED"


@pytest.mark.asyncio
async def test_retry_sweep_resends_due_alerts(alert_service, create_order, session_factory, resend):
    resend.failing = True
    order = await create_order()
    await alert_service.send_new_order_alert(order)
    [alert] = await _alerts(session_factory)
    async with session_factory() as session:
        stored = await session.get(EmailAlert, alert.id)
        stored.failed_at = utcnow() - timedelta(minutes=10)
        await session.commit()
    resend.failing = False

    attempted = await alert_service.retry_failed_alerts()

    assert attempted == 1
    [alert] = await _alerts(session_factory)
    assert alert.status is AlertStatus.SENT
    assert alert.error_message is None
    assert resend.requests[-1] == resend.requests[0]


@pytest.mark.asyncio
async def test_retry_sweep_waits_for_backoff(alert_service, create_order, resend):
    resend.failing = True
    order = await create_order()
    await alert_service.send_new_order_alert(order)

    assert await alert_service.retry_failed_alerts() == 0
    assert len(resend.requests) == 1


@pytest.mark.asyncio
async def test_retry_sweep_gives_up_after_max_retries(alert_service, create_order, session_factory, settings, resend):
    resend.failing = True
    order = await create_order()
    await alert_service.send_new_order_alert(order)
    [alert] = await _alerts(session_factory)
    async with session_factory() as session:
        stored = await session.get(EmailAlert, alert.id)
        stored.retry_count = settings.alert_max_retries
        stored.failed_at = utcnow() - timedelta(days=1)
        await session.commit()

    assert await alert_service.retry_failed_alerts() == 0


@pytest.mark.asyncio
async def test_mail_client_without_key_reports_error():
    client = MailClient("", httpx.AsyncClient(transport=httpx.MockTransport(FakeResend())))

    result = await client.send(MailMessage(sender="a@x.test", to=["b@x.test"], subject="s", html="<p>h</p>"))

    assert not result.ok
    assert "RESEND_API_KEY" in result.error


@pytest.mark.asyncio
async def test_mail_client_transport_error_is_returned():
    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = MailClient("re_test", httpx.AsyncClient(transport=httpx.MockTransport(unreachable)))

    result = await client.send(MailMessage(sender="a@x.test", to=["b@x.test"], subject="s", html="<p>h</p>"))

    assert not result.ok
    assert "transport error" in result.error
