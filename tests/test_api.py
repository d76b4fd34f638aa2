"""HTTP surface of the order store: placing orders, payment callbacks, contact form, tracking."""

import json
from decimal import Decimal

import httpx
import pytest

from app.database import get_db
from app.main import app
from app.models import Shipment
from conftest import CARRIER_HOST, DEFAULT_ADDRESS, NOTIFY_HOST
from shared.events import ORDERS_CREATED_TOPIC, ORDERS_UPDATED_TOPIC
from shared.order_state import OrderStatus, PaymentStatus

CUSTOMER = {"X-User-ID": "user-1"}


@pytest.fixture
async def api(sessions, producer, shipments, notifications):
    async def override_get_db():
        async with sessions() as db:
            yield db

    app.dependency_overrides[get_db] = override_get_db
    app.state.kafka_producer = producer
    app.state.shipments = shipments
    app.state.notifications = notifications
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://store.test") as client:
        yield client
    app.dependency_overrides.clear()


def _events(producer, topic: str) -> list[dict]:
    return [json.loads(m.value) for m in producer.on(topic)]


class TestPlaceOrder:
    async def test_order_is_persisted_and_announced(self, api, factory, producer):
        await factory.product("P1", stock=5, price="250.00", name="Steel Bottle")

        resp = await api.post(
            "/orders",
            headers={**CUSTOMER, "X-Request-ID": "req-42"},
            json={
                "user_email": "asha@example.com",
                "address": DEFAULT_ADDRESS,
                "items": [{"product_id": "P1", "quantity": 2}],
            },
        )

        assert resp.status_code == 201
        assert resp.headers["X-Request-ID"] == "req-42"
        body = resp.json()
        assert body["payment_status"] == "pending"
        assert body["order_status"] == "pending"
        assert body["items"][0]["name"] == "Steel Bottle"
        assert Decimal(body["total_amount"]) == Decimal("500")

        (event,) = _events(producer, ORDERS_CREATED_TOPIC)
        assert event["correlation_id"] == "req-42"
        assert event["order"]["id"] == body["id"]
        stored = await factory.get(body["id"])
        assert stored.user_id == "user-1"

    async def test_unknown_product_is_rejected(self, api, producer):
        resp = await api.post(
            "/orders",
            headers=CUSTOMER,
            json={"address": DEFAULT_ADDRESS, "items": [{"product_id": "ghost", "quantity": 1}]},
        )

        assert resp.status_code == 422
        assert "ghost" in resp.json()["detail"]
        assert producer.sent == []

    async def test_quantity_must_be_positive(self, api, factory):
        await factory.product("P1", stock=5)

        resp = await api.post(
            "/orders",
            headers=CUSTOMER,
            json={"address": DEFAULT_ADDRESS, "items": [{"product_id": "P1", "quantity": 0}]},
        )

        assert resp.status_code == 422

    async def test_anonymous_caller_is_refused(self, api):
        resp = await api.post(
            "/orders",
            json={"address": DEFAULT_ADDRESS, "items": [{"product_id": "P1", "quantity": 1}]},
        )

        assert resp.status_code == 401
        assert resp.json()["detail"] == "User not authenticated"


class TestGetOrder:
    async def test_owner_sees_the_order(self, api, factory):
        await factory.order(order_id="mine")

        resp = await api.get("/orders/mine", headers=CUSTOMER)

        assert resp.status_code == 200
        assert resp.json()["id"] == "mine"
        assert resp.json()["shipment"] is None

    async def test_another_customers_order_looks_missing(self, api, factory):
        await factory.order(order_id="theirs", user_id="user-2")

        other = await api.get("/orders/theirs", headers=CUSTOMER)
        missing = await api.get("/orders/nope", headers=CUSTOMER)

        assert other.status_code == missing.status_code == 404
        assert other.json() == missing.json() == {"detail": "Order not found"}

    async def test_anonymous_caller_cannot_read(self, api, factory):
        await factory.order(order_id="mine")

        resp = await api.get("/orders/mine")

        assert resp.status_code == 401
        assert resp.json()["detail"] == "User not authenticated"


class TestPaymentCallback:
    async def test_completion_publishes_before_and_after(self, api, factory, producer):
        await factory.order(order_id="pay-1")

        resp = await api.post("/orders/pay-1/payment", json={"status": "completed"})

        assert resp.status_code == 200
        assert resp.json()["payment_status"] == "completed"
        (event,) = _events(producer, ORDERS_UPDATED_TOPIC)
        assert event["before"]["payment_status"] == "pending"
        assert event["after"]["payment_status"] == "completed"

    async def test_failure_carries_the_gateway_reason(self, api, factory, producer):
        await factory.order(order_id="pay-2")

        await api.post("/orders/pay-2/payment", json={"status": "failed", "reason": "card declined"})

        (event,) = _events(producer, ORDERS_UPDATED_TOPIC)
        assert event["after"]["payment_error"] == "card declined"
        assert (await factory.get("pay-2")).payment_status == PaymentStatus.FAILED

    async def test_completed_payment_cannot_fail(self, api, factory, producer):
        await factory.order(order_id="pay-3", payment_status=PaymentStatus.COMPLETED)

        resp = await api.post("/orders/pay-3/payment", json={"status": "failed"})

        assert resp.status_code == 409
        assert resp.json()["detail"] == "Cannot move payment from completed to failed"
        assert (await factory.get("pay-3")).payment_status == PaymentStatus.COMPLETED
        assert producer.sent == []

    async def test_resent_callback_is_not_a_mutation(self, api, factory, producer):
        await factory.order(order_id="pay-4")

        first = await api.post("/orders/pay-4/payment", json={"status": "completed"})
        again = await api.post("/orders/pay-4/payment", json={"status": "completed"})

        assert first.status_code == again.status_code == 200
        assert len(producer.on(ORDERS_UPDATED_TOPIC)) == 1

    async def test_unknown_order(self, api):
        resp = await api.post("/orders/missing/payment", json={"status": "completed"})

        assert resp.status_code == 404


class TestContact:
    async def test_blank_fields_are_rejected(self, api, stub):
        resp = await api.post("/contact", json={"name": "Asha", "email": "asha@example.com", "subject": " "})

        assert resp.status_code == 400
        assert resp.json()["detail"] == "Missing required fields"
        assert stub.calls(NOTIFY_HOST) == []

    async def test_message_goes_to_support(self, api, stub):
        resp = await api.post(
            "/contact",
            json={
                "name": "Asha",
                "email": "asha@example.com",
                "subject": "Late parcel",
                "message": "Where is my order?",
            },
        )

        assert resp.status_code == 200
        assert resp.json() == {"success": True, "message": "Message sent successfully"}
        (payload,) = stub.notifications()
        assert payload["template"] == "contact_message"
        assert payload["to"] == "support@budgetbucket.com"

    async def test_provider_outage_is_a_503(self, api, stub):
        stub.fail_next(NOTIFY_HOST, 503)

        resp = await api.post(
            "/contact",
            json={"name": "A", "email": "a@example.com", "subject": "S", "message": "M"},
        )

        assert resp.status_code == 503


class TestTrackingRefresh:
    async def _shipped_order(self, factory, sessions, order_id: str) -> None:
        await factory.order(
            order_id=order_id,
            payment_status=PaymentStatus.COMPLETED,
            order_status=OrderStatus.PROCESSING,
        )
        async with sessions() as db:
            db.add(
                Shipment(
                    order_id=order_id,
                    external_id="5001",
                    tracking_number="TRK5001",
                    carrier_name="Test Courier",
                )
            )
            await db.commit()

    async def test_no_shipment_yet(self, api, factory):
        await factory.order(order_id="unshipped")

        resp = await api.post("/shipments/unshipped/refresh")

        assert resp.status_code == 404
        assert resp.json()["detail"] == "Shipment not found"

    async def test_in_transit_advances_the_order(self, api, factory, sessions, producer, stub):
        await self._shipped_order(factory, sessions, "track-1")

        resp = await api.post("/shipments/track-1/refresh")

        assert resp.status_code == 200
        body = resp.json()
        assert body["order_status"] == "shipped"
        assert body["shipment"]["status"] == "in_transit"
        assert body["carrier_status"] == "In Transit"
        assert body["current_location"] == "Hub - Pune"
        assert len(body["updates"]) == 1
        assert stub.calls(CARRIER_HOST)[0].url.params["shipment_id"] == "5001"
        (event,) = _events(producer, ORDERS_UPDATED_TOPIC)
        assert event["after"]["order_status"] == "shipped"
        (payload,) = stub.notifications()
        assert payload["template"] == "shipment_created"
        assert payload["data"]["tracking_number"] == "TRK5001"
        assert "shipment_created" in (await factory.get("track-1")).email_sent

    async def test_delivery_is_announced(self, api, factory, sessions, producer, stub):
        await self._shipped_order(factory, sessions, "track-4")
        stub.track_status = "Delivered"

        resp = await api.post("/shipments/track-4/refresh")

        assert resp.json()["order_status"] == "delivered"
        assert resp.json()["shipment"]["status"] == "delivered"
        assert stub.templates() == ["order_delivered"]

    async def test_notification_outage_does_not_block_tracking(self, api, factory, sessions, stub):
        await self._shipped_order(factory, sessions, "track-5")
        stub.fail_next(NOTIFY_HOST, 503)

        resp = await api.post("/shipments/track-5/refresh")

        assert resp.status_code == 200
        order = await factory.get("track-5")
        assert order.order_status == OrderStatus.SHIPPED
        assert "shipment_created" not in order.email_sent

    async def test_second_refresh_changes_nothing(self, api, factory, sessions, producer, stub):
        await self._shipped_order(factory, sessions, "track-2")

        await api.post("/shipments/track-2/refresh")
        again = await api.post("/shipments/track-2/refresh")

        assert again.json()["order_status"] == "shipped"
        assert len(producer.on(ORDERS_UPDATED_TOPIC)) == 1
        assert stub.templates() == ["shipment_created"]

    async def test_carrier_outage_is_a_503(self, api, factory, sessions, stub):
        await self._shipped_order(factory, sessions, "track-3")
        stub.fail_next(CARRIER_HOST, 502)

        resp = await api.post("/shipments/track-3/refresh")

        assert resp.status_code == 503
        assert (await factory.get("track-3")).order_status == OrderStatus.PROCESSING


async def test_health(api):
    resp = await api.get("/health")

    assert resp.json() == {"status": "ok"}
