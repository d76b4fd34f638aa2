"""
Shared fixtures: a throwaway SQLite database per test, a frozen clock,
collaborators wired to an httpx.MockTransport and fake Kafka endpoints.
"""

import os

# Settings are read at import time; keep tracing off and never touch a real database
os.environ["OTLP_ENDPOINT"] = ""
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

import itertools
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.database import Base as StoreBase
from app.models import Order, Product, Shipment
from fulfillment_service.database import Base as FulfillmentBase
from fulfillment_service.dispatcher import TriggerDispatcher
from fulfillment_service.handlers import NewOrderHandler, PaymentFailedHandler
from fulfillment_service.models import FulfillmentTransition
from fulfillment_service.pipeline import FulfillmentPipeline
from fulfillment_service.reaper import PaymentFailureReaper
from shared.collaborators.invoice import InvoiceGenerator
from shared.collaborators.notification import NotificationSender
from shared.collaborators.shipment import ShipmentGateway
from shared.events import OrderCreatedEvent, OrderSnapshot, OrderUpdatedEvent
from shared.order_state import OrderStatus, PaymentStatus

INVOICE_HOST = "invoices.test"
CARRIER_HOST = "carrier.test"
NOTIFY_HOST = "notify.test"

DEFAULT_ADDRESS = {
    "name": "Asha Rao",
    "street": "12 MG Road",
    "city": "Bengaluru",
    "state": "KA",
    "postal_code": "560001",
    "phone": "+91-9800000000",
}


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 1, 12, 0, 0))


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(StoreBase.metadata.create_all)
        await conn.run_sync(
            FulfillmentBase.metadata.create_all, tables=[FulfillmentTransition.__table__]
        )
    yield engine
    await engine.dispose()


@pytest.fixture
def sessions(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


class OrderFactory:
    """Seeds and inspects rows the way the order store writes them."""

    def __init__(self, sessions, clock: FrozenClock) -> None:
        self._sessions = sessions
        self._clock = clock
        self._ids = itertools.count(1)

    async def product(self, product_id: str, stock: int, price: str = "100.00", name: str | None = None):
        async with self._sessions() as db:
            db.add(
                Product(
                    id=product_id,
                    name=name or f"Product {product_id}",
                    price=Decimal(price),
                    stock=stock,
                    last_updated=self._clock(),
                )
            )
            await db.commit()

    async def order(
        self,
        items: list[tuple[str, int]] | None = None,
        *,
        order_id: str | None = None,
        user_id: str = "user-1",
        user_email: str | None = "asha@example.com",
        address: dict | None = None,
        created_at: datetime | None = None,
        **columns,
    ) -> OrderSnapshot:
        items = items if items is not None else [("P1", 1)]
        order = Order(
            id=order_id or f"order-{next(self._ids)}",
            user_id=user_id,
            user_email=user_email,
            items=[
                {"product_id": pid, "name": f"Product {pid}", "quantity": qty, "unit_price": "100.00"}
                for pid, qty in items
            ],
            address=address or dict(DEFAULT_ADDRESS),
            payment_status=columns.pop("payment_status", PaymentStatus.PENDING),
            order_status=columns.pop("order_status", OrderStatus.PENDING),
            email_sent=columns.pop("email_sent", {}),
            created_at=created_at or self._clock(),
            updated_at=created_at or self._clock(),
            **columns,
        )
        async with self._sessions() as db:
            db.add(order)
            await db.commit()
            return OrderSnapshot.model_validate(order)

    async def get(self, order_id: str) -> Order:
        async with self._sessions() as db:
            return await db.get(Order, order_id)

    async def stock(self, product_id: str) -> int:
        async with self._sessions() as db:
            return (await db.get(Product, product_id)).stock

    async def shipments(self, order_id: str) -> list[Shipment]:
        async with self._sessions() as db:
            result = await db.execute(select(Shipment).where(Shipment.order_id == order_id))
            return list(result.scalars().all())

    async def transition(self, order_id: str, transition: str) -> FulfillmentTransition | None:
        async with self._sessions() as db:
            return await db.get(FulfillmentTransition, (order_id, transition))

    async def set_payment(
        self, order_id: str, status: PaymentStatus, reason: str | None = None
    ) -> OrderUpdatedEvent:
        """Record a payment callback and return the lifecycle event the store would publish."""
        async with self._sessions() as db:
            order = await db.get(Order, order_id)
            before = OrderSnapshot.model_validate(order)
            order.payment_status = status
            if status == PaymentStatus.FAILED:
                order.payment_error = reason or "Payment declined"
            await db.commit()
            after = OrderSnapshot.model_validate(order)
        return OrderUpdatedEvent(correlation_id="req-test", before=before, after=after)

    @staticmethod
    def created(order: OrderSnapshot) -> OrderCreatedEvent:
        return OrderCreatedEvent(correlation_id="req-test", order=order)


@pytest.fixture
def factory(sessions, clock):
    return OrderFactory(sessions, clock)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class CollaboratorStub:
    """Answers collaborator HTTP calls, records them, and can be scripted to fail."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._failures: dict[str, list[int]] = {}
        self._seq = itertools.count(1)
        self.track_status = "In Transit"

    def fail_next(self, host: str, *statuses: int) -> None:
        self._failures.setdefault(host, []).extend(statuses)

    def calls(self, host: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.host == host]

    def notifications(self) -> list[dict]:
        return [json.loads(r.content) for r in self.calls(NOTIFY_HOST)]

    def templates(self) -> list[str]:
        return [payload["template"] for payload in self.notifications()]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        queued = self._failures.get(host)
        if queued:
            return httpx.Response(queued.pop(0), json={"message": "scripted failure"})

        n = next(self._seq)
        if host == INVOICE_HOST:
            return httpx.Response(200, json={"url": f"https://{INVOICE_HOST}/invoices/{n}.pdf"})
        if host == CARRIER_HOST and request.url.path.endswith("/orders/create/adhoc"):
            return httpx.Response(
                200,
                json={
                    "shipment_id": 5000 + n,
                    "tracking_number": f"TRK{5000 + n}",
                    "courier_name": "Test Courier",
                    "estimated_delivery": "2026-03-06",
                },
            )
        if host == CARRIER_HOST and request.url.path.endswith("/shipments/track"):
            return httpx.Response(
                200,
                json={
                    "expected_delivery_date": "2026-03-05",
                    "track_data": {
                        "shipment_track_status": self.track_status,
                        "current_status_desc": "Hub - Pune",
                        "track_history": [
                            {"status": "Picked", "date": "2026-03-02T10:00:00", "location": "Warehouse"}
                        ],
                    },
                },
            )
        if host == NOTIFY_HOST:
            return httpx.Response(200, json={"messageId": f"msg-{n}"})
        return httpx.Response(404, json={"message": f"no route for {request.url}"})


@pytest.fixture
def stub():
    return CollaboratorStub()


@pytest.fixture
async def http_client(stub):
    async with httpx.AsyncClient(transport=httpx.MockTransport(stub.handler)) as client:
        yield client


@pytest.fixture
def invoices(http_client):
    return InvoiceGenerator(http_client, bucket="test-bucket", renderer_url=f"https://{INVOICE_HOST}/render")


@pytest.fixture
def shipments(http_client):
    return ShipmentGateway(http_client, api_token="test-token", api_base=f"https://{CARRIER_HOST}/v1")


@pytest.fixture
def notifications(http_client):
    return NotificationSender(http_client, endpoint=f"https://{NOTIFY_HOST}/send")


# ---------------------------------------------------------------------------
# Fulfillment service
# ---------------------------------------------------------------------------


@pytest.fixture
def pipeline(sessions, invoices, shipments, notifications, clock):
    return FulfillmentPipeline(sessions, invoices, shipments, notifications, clock=clock)


@pytest.fixture
def reaper(sessions, notifications, clock):
    return PaymentFailureReaper(sessions, notifications, clock=clock)


@pytest.fixture
def dispatcher(sessions, notifications, pipeline, reaper, clock):
    return TriggerDispatcher(
        new_order=NewOrderHandler(sessions, notifications, clock=clock),
        pipeline=pipeline,
        payment_failed=PaymentFailedHandler(sessions, notifications, clock=clock),
        reaper=reaper,
    )


# ---------------------------------------------------------------------------
# Kafka fakes
# ---------------------------------------------------------------------------


@dataclass
class SentMessage:
    topic: str
    key: bytes | None
    value: bytes
    headers: list = field(default_factory=list)


class FakeProducer:
    def __init__(self) -> None:
        self.sent: list[SentMessage] = []

    async def send_and_wait(self, topic, value=None, key=None, headers=None, **kwargs):
        self.sent.append(SentMessage(topic, key, value, list(headers or [])))

    def on(self, topic: str) -> list[SentMessage]:
        return [m for m in self.sent if m.topic == topic]


class FakeConsumer:
    def __init__(self) -> None:
        self.commits = 0

    async def commit(self) -> None:
        self.commits += 1


@dataclass
class FakeMessage:
    topic: str
    value: bytes
    key: bytes | None = None
    headers: list = field(default_factory=list)
    offset: int = 0
    partition: int = 0


@pytest.fixture
def producer():
    return FakeProducer()


@pytest.fixture
def consumer():
    return FakeConsumer()
