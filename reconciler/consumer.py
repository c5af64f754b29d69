import asyncio
import json
import logging
from functools import partial

import aio_pika
from pydantic import ValidationError

from reconciler.config import Settings
from reconciler.handlers import WebhookReconciler
from reconciler.messaging import ATTEMPT_HEADER, RetryQueue
from reconciler.schemas import WebhookPayload

logger = logging.getLogger(__name__)

MAX_RETRY_DELAY_SECONDS = 60.0


def retry_backoff(attempt: int, base_seconds: float) -> float:
    return min(base_seconds * (2 ** attempt), MAX_RETRY_DELAY_SECONDS)


async def process_retry_message(
    message: aio_pika.IncomingMessage,
    reconciler: WebhookReconciler,
    retry_queue: RetryQueue,
    settings: Settings,
):
    async with message.process():
        attempt = int((message.headers or {}).get(ATTEMPT_HEADER, 1))
        try:
            body = json.loads(message.body.decode())
            payload = WebhookPayload.model_validate(body)
        except (ValueError, ValidationError) as e:
            logger.error("Dropping malformed retry message: %s", e)
            return

        result = await reconciler.process(payload)
        if not result.should_retry:
            return

        if attempt >= settings.webhook_retry_max_attempts:
            logger.error(
                "Giving up on %s event %s after %d attempts: %s",
                payload.type, payload.event_id, attempt, result.detail,
            )
            await retry_queue.dead_letter(body, attempt, result.detail)
            return

        delay = retry_backoff(attempt, settings.webhook_retry_base_delay_seconds)
        logger.warning(
            "%s event %s failed again (attempt %d), retrying in %.0fs", payload.type, payload.event_id, attempt, delay
        )
        await asyncio.sleep(delay)
        await retry_queue.enqueue_retry(body, attempt + 1)


async def start_consumer(retry_queue: RetryQueue, reconciler: WebhookReconciler, settings: Settings) -> str:
    """Start consuming the retry queue; returns the consumer tag."""
    callback = partial(process_retry_message, reconciler=reconciler, retry_queue=retry_queue, settings=settings)
    consumer_tag = await retry_queue.retry_queue.consume(callback)
    logger.info("Webhook retry consumer listening on the retry queue")
    return consumer_tag
