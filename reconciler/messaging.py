import json
import logging
from typing import Optional

import aio_pika

logger = logging.getLogger(__name__)

WEBHOOK_EXCHANGE = "webhook_exchange"
RETRY_ROUTING_KEY = "webhook.retry"
DEAD_LETTER_ROUTING_KEY = "webhook.dead_letter"
RETRY_QUEUE = "webhook_retry_q"
DEAD_LETTER_QUEUE = "webhook_dead_letter_q"
ATTEMPT_HEADER = "x-attempt"


class RetryQueue:
    """Redelivery of webhook payloads whose processing failed transiently."""

    def __init__(self, rabbitmq_url: str):
        self.rabbitmq_url = rabbitmq_url
        self.connection: Optional[aio_pika.abc.AbstractRobustConnection] = None
        self.channel: Optional[aio_pika.abc.AbstractChannel] = None
        self.exchange: Optional[aio_pika.abc.AbstractExchange] = None
        self.retry_queue: Optional[aio_pika.abc.AbstractQueue] = None

    async def connect(self) -> None:
        self.connection = await aio_pika.connect_robust(self.rabbitmq_url)
        self.channel = await self.connection.channel()
        self.exchange = await self.channel.declare_exchange(WEBHOOK_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True)

        self.retry_queue = await self.channel.declare_queue(RETRY_QUEUE, durable=True)
        await self.retry_queue.bind(self.exchange, RETRY_ROUTING_KEY)
        dead_letter_queue = await self.channel.declare_queue(DEAD_LETTER_QUEUE, durable=True)
        await dead_letter_queue.bind(self.exchange, DEAD_LETTER_ROUTING_KEY)
        logger.info("Webhook retry queue ready on %s", WEBHOOK_EXCHANGE)

    async def close(self) -> None:
        if self.connection is not None:
            await self.connection.close()
            self.connection = None

    async def enqueue_retry(self, payload: dict, attempt: int = 1) -> None:
        await self._publish(RETRY_ROUTING_KEY, payload, attempt)

    async def dead_letter(self, payload: dict, attempt: int, error: Optional[str] = None) -> None:
        await self._publish(DEAD_LETTER_ROUTING_KEY, payload, attempt, error=error)

    async def _publish(self, routing_key: str, payload: dict, attempt: int, error: Optional[str] = None) -> None:
        if self.exchange is None:
            raise RuntimeError("RetryQueue.connect() has not been called")
        headers = {ATTEMPT_HEADER: attempt}
        if error:
            headers["x-error"] = error[:500]
        message = aio_pika.Message(
            json.dumps(payload).encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            headers=headers,
        )
        await self.exchange.publish(message, routing_key=routing_key)
        logger.info("Published %s event %s to %s (attempt %d)", payload.get("type"), payload.get("event_id"), routing_key, attempt)
