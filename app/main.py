import logging
from contextlib import asynccontextmanager

import httpx
from aiokafka import AIOKafkaProducer
from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from prometheus_client import make_asgi_app

from app.config import settings
from app.database import Base, engine
from app.middleware.metrics import MetricsMiddleware
from app.middleware.request_id import RequestIDMiddleware
from app.routers import contact, orders, shipments
from shared.collaborators.notification import NotificationSender
from shared.collaborators.shipment import ShipmentGateway
from shared.logging import setup_logging
from shared.tracing import setup_tracing

setup_logging(settings.log_level, service="order-store")
logger = logging.getLogger(__name__)

setup_tracing("order-store", settings.otlp_endpoint)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting up, creating database tables")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)

    producer = AIOKafkaProducer(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        enable_idempotence=True,
    )
    await producer.start()
    app.state.kafka_producer = producer

    http_client = httpx.AsyncClient(timeout=settings.collaborator_timeout_seconds)
    app.state.shipments = ShipmentGateway(
        http_client,
        api_token=settings.carrier_api_token,
        warehouse_id=settings.carrier_warehouse_id,
        api_base=settings.carrier_api_base,
    )
    app.state.notifications = NotificationSender(
        http_client,
        api_key=settings.notification_api_key,
        endpoint=settings.notification_endpoint,
        sender=settings.notification_from,
    )
    logger.info(
        "Startup complete",
        extra={
            "carrier_demo_mode": app.state.shipments.demo_mode,
            "notification_demo_mode": app.state.notifications.demo_mode,
        },
    )

    yield

    await http_client.aclose()
    await producer.stop()
    await engine.dispose()
    logger.info("Shutting down")


app = FastAPI(
    title="Budget Bucket Order Store",
    description="Order documents, payment callbacks and storefront callables",
    version="1.0.0",
    lifespan=lifespan,
)

FastAPIInstrumentor.instrument_app(app)
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestIDMiddleware)
app.include_router(orders.router, prefix="/orders", tags=["orders"])
app.include_router(shipments.router, prefix="/shipments", tags=["shipments"])
app.include_router(contact.router, prefix="/contact", tags=["contact"])

# Expose Prometheus metrics at /metrics
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}
