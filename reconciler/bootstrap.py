from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from reconciler.alerts import AlertService
from reconciler.backfill import BackfillFetcher
from reconciler.config import Settings
from reconciler.database import create_engine, create_session_factory
from reconciler.deduplicator import RequestDeduplicator
from reconciler.dispatcher import SideEffectDispatcher
from reconciler.handlers import WebhookReconciler
from reconciler.labels import ShippingLabelService
from reconciler.mail import MailClient
from reconciler.messaging import RetryQueue
from reconciler.square_client import SquareClient


@dataclass
class Services:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker
    http_client: httpx.AsyncClient
    alerts: AlertService
    labels: ShippingLabelService
    backfill: BackfillFetcher
    deduplicator: RequestDeduplicator
    dispatcher: SideEffectDispatcher
    reconciler: WebhookReconciler
    retry_queue: Optional[RetryQueue] = None

    async def close(self) -> None:
        await self.dispatcher.close()
        self.deduplicator.clear_all()
        if self.retry_queue is not None:
            await self.retry_queue.close()
        await self.http_client.aclose()
        await self.engine.dispose()


def build_services(
    settings: Settings,
    engine: Optional[AsyncEngine] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Services:
    """Wire every component from one Settings instance."""
    engine = engine or create_engine(settings.database_url)
    session_factory = create_session_factory(engine)
    http_client = http_client or httpx.AsyncClient(timeout=settings.http_timeout_seconds)

    mail_client = MailClient(settings.resend_api_key, http_client)
    square_client = SquareClient(
        http_client, settings.square_base_url, settings.square_access_token, settings.square_api_version
    )
    alerts = AlertService(session_factory, mail_client, settings)
    labels = ShippingLabelService(
        session_factory, http_client, settings.shippo_api_key, lease_seconds=settings.label_lease_seconds
    )
    backfill = BackfillFetcher(session_factory, square_client)
    deduplicator = RequestDeduplicator(
        ttl_seconds=settings.dedup_ttl_seconds, log_duplicates=settings.dedup_log_duplicates
    )
    dispatcher = SideEffectDispatcher()
    reconciler = WebhookReconciler(
        session_factory, alerts, labels, backfill, deduplicator, dispatcher, settings
    )
    retry_queue = RetryQueue(settings.rabbitmq_url) if settings.retry_queue_enabled else None

    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        http_client=http_client,
        alerts=alerts,
        labels=labels,
        backfill=backfill,
        deduplicator=deduplicator,
        dispatcher=dispatcher,
        reconciler=reconciler,
        retry_queue=retry_queue,
    )
