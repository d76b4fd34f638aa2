"""
Invoice generator client.

Renders an order into an invoice artifact and returns its URL. With a
renderer endpoint configured the invoice document is POSTed there and the
renderer answers with the stored file's URL; without one the client runs in
demo mode and returns the Cloud Storage path the file would live at.
"""

import logging
import time
from decimal import Decimal

import httpx

from shared.clock import utcnow
from shared.collaborators.base import CollaboratorRejectedError, request_json
from shared.events import OrderSnapshot

logger = logging.getLogger(__name__)

_COLLABORATOR = "invoice generator"


def _money(value: Decimal) -> str:
    return str(value.quantize(Decimal("0.01")))


def build_invoice_document(order_id: str, order: OrderSnapshot) -> dict:
    address = order.address
    return {
        "invoice_id": f"INV-{order_id}",
        "order_id": order_id,
        "date": utcnow().date().isoformat(),
        "customer": {
            "name": address.name,
            "email": order.contact_email or "",
            "phone": address.phone,
        },
        "shipping_address": {
            "street": address.street,
            "city": address.city,
            "state": address.state,
            "postal_code": address.postal_code,
            "country": address.country or "India",
        },
        "items": [
            {
                "product_id": item.product_id,
                "name": item.name,
                "quantity": item.quantity,
                "unit_price": _money(item.unit_price),
                "total": _money(item.subtotal),
            }
            for item in order.items
        ],
        "subtotal": _money(order.total_amount),
        "total": _money(order.total_amount),
        "payment_status": order.payment_status.value,
    }


class InvoiceGenerator:
    def __init__(
        self,
        client: httpx.AsyncClient,
        bucket: str = "",
        renderer_url: str = "",
    ) -> None:
        self._client = client
        self._bucket = bucket
        self._renderer_url = renderer_url

    @property
    def demo_mode(self) -> bool:
        return not self._renderer_url

    async def generate(self, order_id: str, order: OrderSnapshot) -> str:
        if self.demo_mode:
            file_name = f"invoices/{order_id}_{int(time.time() * 1000)}.pdf"
            url = f"https://storage.googleapis.com/{self._bucket}/{file_name}"
            logger.info(
                "Invoice renderer not configured, returning storage URL",
                extra={"order_id": order_id, "invoice_url": url},
            )
            return url

        body = await request_json(
            self._client,
            "POST",
            self._renderer_url,
            collaborator=_COLLABORATOR,
            json={
                "bucket": self._bucket,
                "format": "pdf",
                "document": build_invoice_document(order_id, order),
            },
        )
        url = body.get("url")
        if not url:
            raise CollaboratorRejectedError(f"{_COLLABORATOR} response has no url")

        logger.info("Invoice generated", extra={"order_id": order_id, "invoice_url": url})
        return url
