"""
Carrier shipment gateway client (Shiprocket-style REST API).

Creates shipments, answers tracking queries and cancels shipments. Without
an API token every call is answered locally in demo mode so the pipeline
still runs end to end.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta

import httpx

from shared.clock import utcnow
from shared.collaborators.base import CollaboratorRejectedError, request_json
from shared.events import OrderSnapshot
from shared.order_state import ShipmentStatus

logger = logging.getLogger(__name__)

DEFAULT_CARRIER_API_BASE = "https://apiv2.shiprocket.in/v1"

_COLLABORATOR = "shipment gateway"

_IN_TRANSIT_MARKERS = ("transit", "picked", "shipped", "dispatched", "out for delivery")


@dataclass
class ShipmentHandle:
    shipment_id: str
    tracking_number: str
    carrier_name: str
    estimated_delivery: str
    label_url: str = ""


@dataclass
class TrackingUpdate:
    status: str
    timestamp: str
    location: str
    message: str


@dataclass
class TrackingInfo:
    status: ShipmentStatus
    raw_status: str
    current_location: str
    estimated_delivery: str
    updates: list[TrackingUpdate] = field(default_factory=list)


def normalise_carrier_status(raw_status: str) -> ShipmentStatus:
    status = raw_status.strip().lower()
    if status == "delivered" or status.startswith("delivered"):
        return ShipmentStatus.DELIVERED
    if any(marker in status for marker in _IN_TRANSIT_MARKERS):
        return ShipmentStatus.IN_TRANSIT
    return ShipmentStatus.PENDING


def _party(order: OrderSnapshot) -> dict:
    address = order.address
    first_name, _, last_name = address.name.partition(" ")
    return {
        "first_name": first_name,
        "last_name": last_name,
        "address_line_1": address.street,
        "city": address.city,
        "state": address.state,
        "postal_code": address.postal_code,
        "country": address.country or "India",
        "email": order.contact_email or "noreply@budgetbucket.com",
        "phone": address.phone,
    }


def build_shipment_payload(order_id: str, order: OrderSnapshot, warehouse_id: str) -> dict:
    party = _party(order)
    return {
        "order_id": order_id,
        "order_date": utcnow().date().isoformat(),
        "pickup_location_id": warehouse_id,
        "billing_address": party,
        "shipping_address": party,
        "order_items": [
            {
                "name": item.name,
                "sku": item.product_id,
                "units": item.quantity,
                "selling_price": float(item.unit_price),
            }
            for item in order.items
        ],
        # only paid orders reach the carrier
        "payment_method": "Prepaid",
        "sub_total": float(order.total_amount),
        "total_weight": 1,
        "length": 10,
        "breadth": 10,
        "height": 10,
        "length_unit": "cm",
        "weight_unit": "kg",
    }


class ShipmentGateway:
    def __init__(
        self,
        client: httpx.AsyncClient,
        api_token: str = "",
        warehouse_id: str = "1",
        api_base: str = DEFAULT_CARRIER_API_BASE,
    ) -> None:
        self._client = client
        self._api_token = api_token
        self._warehouse_id = warehouse_id
        self._api_base = api_base.rstrip("/")

    @property
    def demo_mode(self) -> bool:
        return not self._api_token

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_token}",
        }

    async def create_shipment(self, order_id: str, order: OrderSnapshot) -> ShipmentHandle:
        if self.demo_mode:
            handle = ShipmentHandle(
                shipment_id=f"demo-{int(time.time() * 1000)}",
                tracking_number="DEMO" + uuid.uuid4().hex[:9].upper(),
                carrier_name="Demo Carrier",
                estimated_delivery=(utcnow() + timedelta(days=5)).date().isoformat(),
            )
            logger.warning(
                "Carrier token not configured, created demo shipment",
                extra={"order_id": order_id, "tracking_number": handle.tracking_number},
            )
            return handle

        result = await request_json(
            self._client,
            "POST",
            f"{self._api_base}/external/orders/create/adhoc",
            collaborator=_COLLABORATOR,
            headers=self._headers(),
            json=build_shipment_payload(order_id, order, self._warehouse_id),
        )
        shipment_id = result.get("shipment_id")
        if not shipment_id:
            raise CollaboratorRejectedError(f"{_COLLABORATOR} response has no shipment_id")

        handle = ShipmentHandle(
            shipment_id=str(shipment_id),
            tracking_number=result.get("tracking_number") or f"SR{shipment_id}",
            carrier_name=result.get("courier_name") or "Shiprocket",
            estimated_delivery=result.get("estimated_delivery") or "",
            label_url=result.get("label_url") or "",
        )
        logger.info(
            "Carrier shipment created",
            extra={"order_id": order_id, "shipment_id": handle.shipment_id},
        )
        return handle

    async def track_shipment(self, tracking_id: str) -> TrackingInfo:
        if self.demo_mode:
            now = utcnow()
            return TrackingInfo(
                status=ShipmentStatus.IN_TRANSIT,
                raw_status="In Transit",
                current_location="Regional Hub - Delhi",
                estimated_delivery=(now + timedelta(days=3)).date().isoformat(),
                updates=[
                    TrackingUpdate(
                        status="Order Confirmed",
                        timestamp=(now - timedelta(hours=48)).isoformat(),
                        location="Warehouse",
                        message="Your order has been confirmed",
                    ),
                    TrackingUpdate(
                        status="Picked",
                        timestamp=(now - timedelta(hours=24)).isoformat(),
                        location="Warehouse",
                        message="Package has been picked from warehouse",
                    ),
                    TrackingUpdate(
                        status="In Transit",
                        timestamp=now.isoformat(),
                        location="Regional Hub - Delhi",
                        message="Package is in transit to your city",
                    ),
                ],
            )

        result = await request_json(
            self._client,
            "GET",
            f"{self._api_base}/external/shipments/track",
            collaborator=_COLLABORATOR,
            headers=self._headers(),
            params={"shipment_id": tracking_id},
        )
        track_data = result.get("track_data") or {}
        raw_status = track_data.get("shipment_track_status") or "Unknown"
        updates = [
            TrackingUpdate(
                status=event.get("status", ""),
                timestamp=event.get("date", ""),
                location=event.get("location") or "In Transit",
                message=event.get("status", ""),
            )
            for event in track_data.get("track_history") or []
        ]
        return TrackingInfo(
            status=normalise_carrier_status(raw_status),
            raw_status=raw_status,
            current_location=track_data.get("current_status_desc") or "In Transit",
            estimated_delivery=result.get("expected_delivery_date") or "",
            updates=updates,
        )

    async def cancel_shipment(self, tracking_id: str) -> bool:
        if self.demo_mode:
            logger.info("Shipment cancelled (demo mode)", extra={"shipment_id": tracking_id})
            return True

        await request_json(
            self._client,
            "POST",
            f"{self._api_base}/external/shipments/{tracking_id}/cancel",
            collaborator=_COLLABORATOR,
            allow_empty=True,
            headers=self._headers(),
        )
        logger.info("Carrier shipment cancelled", extra={"shipment_id": tracking_id})
        return True
