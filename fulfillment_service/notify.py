"""
Customer notifications, sent at most once per (order, kind).

A kind is recorded in ``email_sent`` before the message is dispatched, so a
redelivered trigger never sends it twice. A failed send un-records it.
"""

import logging
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment_service import store
from fulfillment_service.steps import StepRecorder
from shared.collaborators.notification import NotificationSender, TemplateKind
from shared.events import OrderSnapshot

logger = logging.getLogger(__name__)


def template_data(order: OrderSnapshot, **extra: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "order_id": order.id,
        "customer_name": order.address.name,
        "total": str(order.total_amount),
    }
    for key, value in extra.items():
        if isinstance(value, datetime):
            value = value.isoformat()
        data[key] = value if value is not None else ""
    return data


async def send_once(
    sessions: async_sessionmaker[AsyncSession],
    sender: NotificationSender,
    *,
    order_id: str,
    recipient: str,
    kind: TemplateKind,
    data: dict[str, Any],
    now: datetime,
) -> str | None:
    """Send ``kind`` unless it was already sent; returns the message id, or None when skipped."""
    async with sessions() as db:
        if not await store.mark_notification(db, order_id, kind.value, recipient, now):
            logger.info(
                "Notification already sent, skipping",
                extra={"order_id": order_id, "template": kind.value},
            )
            return None

    try:
        return await sender.send(recipient, kind, data)
    except Exception:
        async with sessions() as db:
            await store.unmark_notification(db, order_id, kind.value)
        raise


async def send_best_effort(
    sessions: async_sessionmaker[AsyncSession],
    sender: NotificationSender,
    recorder: StepRecorder,
    order: OrderSnapshot,
    kind: TemplateKind,
    data: dict[str, Any],
    clock: Callable[[], datetime],
) -> None:
    """Like ``send_once`` but a failure is recorded and logged instead of raised."""
    recipient = order.contact_email
    if not recipient:
        logger.warning(
            "No contact address on order, notification not sent",
            extra={"order_id": order.id, "template": kind.value},
        )
        recorder.skipped("notify", detail="no contact address", order_id=order.id)
        return

    recorder.started("notify", order_id=order.id)
    try:
        message_id = await send_once(
            sessions,
            sender,
            order_id=order.id,
            recipient=recipient,
            kind=kind,
            data=data,
            now=clock(),
        )
    except Exception as exc:
        logger.warning(
            "Notification failed, continuing",
            extra={"order_id": order.id, "template": kind.value, "error": str(exc)},
        )
        recorder.failed("notify", error=f"{type(exc).__name__}: {exc}", order_id=order.id)
        return

    if message_id is None:
        recorder.skipped("notify", detail=f"{kind.value} already sent", order_id=order.id)
    else:
        recorder.succeeded("notify", detail=message_id, order_id=order.id)
