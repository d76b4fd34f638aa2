"""
Fulfillment service entry point.
Starts the AIOKafka consumer + producer and the reaper scheduler, then runs
the consumer loop.
"""

import asyncio
import contextlib
import functools
import logging

import httpx
import prometheus_client
from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment_service.config import Settings, settings
from fulfillment_service.consumer import publish_steps, run_consumer
from fulfillment_service.database import AsyncSessionLocal, Base, engine
from fulfillment_service.dispatcher import TriggerDispatcher
from fulfillment_service.handlers import NewOrderHandler, PaymentFailedHandler
from fulfillment_service.models import FulfillmentTransition
from fulfillment_service.pipeline import FulfillmentPipeline
from fulfillment_service.reaper import PaymentFailureReaper
from fulfillment_service.scheduler import run_scheduler
from shared.collaborators.invoice import InvoiceGenerator
from shared.collaborators.notification import NotificationSender
from shared.collaborators.shipment import ShipmentGateway
from shared.events import ORDERS_CREATED_TOPIC, ORDERS_UPDATED_TOPIC
from shared.logging import setup_logging
from shared.tracing import setup_tracing

setup_logging(settings.log_level, service="fulfillment-service")
logger = logging.getLogger(__name__)


def build_dispatcher(
    http_client: httpx.AsyncClient,
    sessions: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    config: Settings = settings,
) -> TriggerDispatcher:
    notifications = NotificationSender(
        http_client,
        api_key=config.notification_api_key,
        endpoint=config.notification_endpoint,
        sender=config.notification_from,
    )
    pipeline = FulfillmentPipeline(
        sessions,
        InvoiceGenerator(
            http_client,
            bucket=config.storage_bucket,
            renderer_url=config.invoice_renderer_url,
        ),
        ShipmentGateway(
            http_client,
            api_token=config.carrier_api_token,
            warehouse_id=config.carrier_warehouse_id,
            api_base=config.carrier_api_base,
        ),
        notifications,
        lease_seconds=config.transition_lease_seconds,
    )
    return TriggerDispatcher(
        new_order=NewOrderHandler(sessions, notifications),
        pipeline=pipeline,
        payment_failed=PaymentFailedHandler(
            sessions,
            notifications,
            window_hours=config.payment_failure_window_hours,
            lease_seconds=config.transition_lease_seconds,
        ),
        reaper=PaymentFailureReaper(
            sessions,
            notifications,
            window_hours=config.payment_failure_window_hours,
        ),
    )


async def main() -> None:
    prometheus_client.start_http_server(settings.metrics_port)
    setup_tracing("fulfillment-service", settings.otlp_endpoint)

    # The order tables belong to the order store; only the ledger is ours
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, tables=[FulfillmentTransition.__table__])

    consumer = AIOKafkaConsumer(
        ORDERS_CREATED_TOPIC,
        ORDERS_UPDATED_TOPIC,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=settings.kafka_consumer_group,
        enable_auto_commit=False,
        auto_offset_reset="earliest",
    )
    producer = AIOKafkaProducer(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        enable_idempotence=True,
    )
    http_client = httpx.AsyncClient(timeout=settings.collaborator_timeout_seconds)
    dispatcher = build_dispatcher(http_client)

    await producer.start()
    await consumer.start()
    scheduler = asyncio.create_task(
        run_scheduler(
            dispatcher,
            settings.reaper_interval_seconds,
            on_dispatch=functools.partial(publish_steps, producer),
        )
    )
    logger.info(
        "Fulfillment service started",
        extra={
            "bootstrap_servers": settings.kafka_bootstrap_servers,
            "consumer_group": settings.kafka_consumer_group,
            "metrics_port": settings.metrics_port,
            "reaper_interval_seconds": settings.reaper_interval_seconds,
        },
    )

    try:
        await run_consumer(
            consumer,
            producer,
            dispatcher,
            max_attempts=settings.dispatch_max_attempts,
            backoff_seconds=settings.dispatch_retry_backoff_seconds,
        )
    finally:
        scheduler.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await scheduler
        await consumer.stop()
        await producer.stop()
        await http_client.aclose()
        await engine.dispose()
        logger.info("Fulfillment service stopped")


if __name__ == "__main__":
    asyncio.run(main())
