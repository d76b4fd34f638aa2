"""
Transactional notification sender.

Delivery backends, in order of preference:
  1. SendGrid, when an API key is configured
  2. a custom JSON endpoint, when one is configured
  3. demo mode: the message is logged and a ``dev-`` id is returned
"""

import logging
import time
from enum import Enum
from typing import Any

import httpx

from shared.collaborators.base import request_json, send_request

logger = logging.getLogger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"

_COLLABORATOR = "notification sender"


class TemplateKind(str, Enum):
    ORDER_CONFIRMATION = "order_confirmation"
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    SHIPMENT_CREATED = "shipment_created"
    ORDER_DELIVERED = "order_delivered"
    ORDER_CANCELLED = "order_cancelled"
    CONTACT_MESSAGE = "contact_message"


_SUBJECTS: dict[TemplateKind, str] = {
    TemplateKind.ORDER_CONFIRMATION: "Order Confirmed - {order_id}",
    TemplateKind.PAYMENT_SUCCESS: "Payment Successful - {order_id}",
    TemplateKind.PAYMENT_FAILED: "Payment Failed - Action Required",
    TemplateKind.SHIPMENT_CREATED: "Your Order is On The Way - {tracking_number}",
    TemplateKind.ORDER_DELIVERED: "Order Delivered - {order_id}",
    TemplateKind.ORDER_CANCELLED: "Order Cancelled - {order_id}",
    TemplateKind.CONTACT_MESSAGE: "[Contact] {subject}",
}

_BODIES: dict[TemplateKind, str] = {
    TemplateKind.ORDER_CONFIRMATION: (
        "Hi {customer_name},\n\nThanks for your order {order_id}. "
        "Total: {total}.\nWe will let you know once your payment is confirmed."
    ),
    TemplateKind.PAYMENT_SUCCESS: (
        "Hi {customer_name},\n\nWe received your payment for order {order_id}.\n"
        "Invoice: {invoice_url}\nTracking number: {tracking_number}"
    ),
    TemplateKind.PAYMENT_FAILED: (
        "Hi {customer_name},\n\nThe payment for order {order_id} did not go through "
        "({reason}).\nThe order will be cancelled automatically at {cancellation_scheduled_for} "
        "unless the payment is completed."
    ),
    TemplateKind.SHIPMENT_CREATED: (
        "Hi {customer_name},\n\nOrder {order_id} has shipped with {carrier_name}.\n"
        "Tracking number: {tracking_number}\nEstimated delivery: {estimated_delivery}"
    ),
    TemplateKind.ORDER_DELIVERED: "Hi {customer_name},\n\nOrder {order_id} has been delivered.",
    TemplateKind.ORDER_CANCELLED: (
        "Hi {customer_name},\n\nOrder {order_id} has been cancelled: {reason}"
    ),
    TemplateKind.CONTACT_MESSAGE: "From: {name} <{email}>\n\n{message}",
}


class _Blank(dict):
    def __missing__(self, key: str) -> str:
        return ""


def render(template_kind: TemplateKind, data: dict[str, Any]) -> tuple[str, str]:
    values = _Blank(data)
    return (
        _SUBJECTS[template_kind].format_map(values),
        _BODIES[template_kind].format_map(values),
    )


class NotificationSender:
    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str = "",
        endpoint: str = "",
        sender: str = "noreply@budgetbucket.com",
    ) -> None:
        self._client = client
        self._api_key = api_key
        self._endpoint = endpoint
        self._sender = sender

    @property
    def demo_mode(self) -> bool:
        return not (self._api_key or self._endpoint)

    async def send(self, recipient: str, template_kind: TemplateKind, data: dict[str, Any]) -> str:
        """Deliver one message and return the provider's message id."""
        template_kind = TemplateKind(template_kind)
        subject, text = render(template_kind, data)

        if self._api_key:
            message_id = await self._send_via_sendgrid(recipient, subject, text)
        elif self._endpoint:
            message_id = await self._send_via_endpoint(recipient, subject, text, template_kind, data)
        else:
            message_id = f"dev-{int(time.time() * 1000)}"
            logger.info(
                "Notification provider not configured, message logged only",
                extra={
                    "recipient": recipient,
                    "template": template_kind.value,
                    "subject": subject,
                    "message_id": message_id,
                },
            )
            return message_id

        logger.info(
            "Notification sent",
            extra={
                "recipient": recipient,
                "template": template_kind.value,
                "message_id": message_id,
            },
        )
        return message_id

    async def _send_via_sendgrid(self, recipient: str, subject: str, text: str) -> str:
        # SendGrid answers 202 with an empty body; the id travels in a header
        response = await send_request(
            self._client,
            "POST",
            SENDGRID_SEND_URL,
            collaborator=_COLLABORATOR,
            headers={"Authorization": f"Bearer {self._api_key}"},
            json={
                "personalizations": [{"to": [{"email": recipient}]}],
                "from": {"email": self._sender},
                "subject": subject,
                "content": [{"type": "text/plain", "value": text}],
            },
        )
        return response.headers.get("X-Message-Id") or f"sg-{int(time.time() * 1000)}"

    async def _send_via_endpoint(
        self,
        recipient: str,
        subject: str,
        text: str,
        template_kind: TemplateKind,
        data: dict[str, Any],
    ) -> str:
        body = await request_json(
            self._client,
            "POST",
            self._endpoint,
            collaborator=_COLLABORATOR,
            allow_empty=True,
            json={
                "to": recipient,
                "subject": subject,
                "text": text,
                "template": template_kind.value,
                "data": data,
            },
        )
        return str(body.get("messageId") or body.get("message_id") or f"api-{int(time.time() * 1000)}")

