import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment_service import notify, store, transitions
from fulfillment_service.models import TransitionStatus
from fulfillment_service.results import Ok, PermanentError, TransientError
from fulfillment_service.steps import StepRecorder
from fulfillment_service.transitions import FAILED, ClaimState, TransitionGuard
from shared.clock import utcnow
from shared.collaborators.notification import NotificationSender, TemplateKind
from shared.events import OrderSnapshot
from shared.order_state import OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)


class NewOrderHandler:
    """Sends the order confirmation for a freshly created order."""

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        notifications: NotificationSender,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sessions = sessions
        self._notifications = notifications
        self._clock = clock

    async def handle(self, order: OrderSnapshot, recorder: StepRecorder) -> Ok:
        recipient = order.contact_email
        if not recipient:
            logger.warning(
                "No contact address on new order, confirmation not sent",
                extra={"order_id": order.id, "correlation_id": recorder.correlation_id},
            )
            recorder.skipped("notify", detail="no contact address")
            return Ok("no contact address")

        with recorder.step("notify") as scope:
            message_id = await notify.send_once(
                self._sessions,
                self._notifications,
                order_id=order.id,
                recipient=recipient,
                kind=TemplateKind.ORDER_CONFIRMATION,
                data=notify.template_data(order),
                now=self._clock(),
            )
            scope.detail = message_id or "confirmation already sent"
        return Ok("confirmation sent" if message_id else "confirmation already sent")


@dataclass(frozen=True)
class FailureRecord:
    snapshot: OrderSnapshot
    reason: str
    cancellation_scheduled_for: datetime


class PaymentFailedHandler:
    """
    Records a failed payment and schedules the order for auto-cancellation.

    The order moves pending -> payment_failed; the reaper cancels it once the
    payment window has passed, unless a late completion gets there first.
    """

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        notifications: NotificationSender,
        *,
        clock: Callable[[], datetime] = utcnow,
        window_hours: float = 24.0,
        lease_seconds: float = 600.0,
    ) -> None:
        self._sessions = sessions
        self._notifications = notifications
        self._clock = clock
        self._window = timedelta(hours=window_hours)
        self._guard = TransitionGuard(sessions, clock, lease_seconds)

    async def handle(self, after: OrderSnapshot, recorder: StepRecorder) -> Ok:
        order_id = after.id
        recorder.started("claim")
        claim = await self._guard.claim(order_id, FAILED)
        if claim.state == ClaimState.DUPLICATE:
            recorder.skipped("claim", detail="transition already handled")
            return Ok("duplicate")
        if claim.state == ClaimState.IN_FLIGHT:
            recorder.skipped("claim", detail="transition held by a concurrent run")
            raise TransientError(f"Payment failure for order {order_id} is already in progress")
        recorder.succeeded("claim", detail=f"attempt {claim.attempts}")

        try:
            updated = await self._record_failure(order_id, after.payment_error, recorder)
        except Exception:
            await self._guard.release(order_id, FAILED)
            raise

        if updated is None:
            return Ok("superseded")

        await notify.send_best_effort(
            self._sessions,
            self._notifications,
            recorder,
            updated.snapshot,
            TemplateKind.PAYMENT_FAILED,
            notify.template_data(
                updated.snapshot,
                reason=updated.reason,
                cancellation_scheduled_for=updated.cancellation_scheduled_for,
            ),
            self._clock,
        )
        return Ok("payment failure recorded")

    async def _record_failure(
        self, order_id: str, payment_error: str | None, recorder: StepRecorder
    ) -> FailureRecord | None:
        with recorder.step("record_failure") as scope:
            async with self._sessions() as db:
                order = await store.load_order(db, order_id, for_update=True)
                if order is None:
                    raise PermanentError(f"Order {order_id} not found")

                now = self._clock()
                if (
                    order.payment_status != PaymentStatus.FAILED
                    or order.order_status != OrderStatus.PENDING
                ):
                    # A later payment completion or a cancellation already moved the order on
                    logger.info(
                        "Payment failure superseded, nothing to record",
                        extra={
                            "order_id": order_id,
                            "payment_status": order.payment_status.value,
                            "order_status": order.order_status.value,
                        },
                    )
                    await transitions.finish(db, order_id, FAILED, TransitionStatus.SKIPPED, now)
                    await db.commit()
                    scope.detail = "superseded"
                    return None

                store.apply_payment_failure(order, payment_error, now, self._window)
                await transitions.finish(db, order_id, FAILED, TransitionStatus.DONE, now)
                await db.commit()

                scope.detail = f"auto-cancel at {order.cancellation_scheduled_for.isoformat()}"
                return FailureRecord(
                    snapshot=OrderSnapshot.model_validate(order),
                    reason=order.payment_failure_reason,
                    cancellation_scheduled_for=order.cancellation_scheduled_for,
                )

