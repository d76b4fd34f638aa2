"""
Payment-failure reaper.

Cancels orders whose payment failed and was not completed within the payment
window. Each order is cancelled in its own transaction by a conditional
UPDATE, so overlapping runs cancel an order at most once, and one bad order
never stops the rest of the batch.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment_service import notify, store
from fulfillment_service.metrics import ORDERS_REAPED
from fulfillment_service.steps import StepRecorder
from shared.clock import utcnow
from shared.collaborators.notification import NotificationSender, TemplateKind

logger = logging.getLogger(__name__)


@dataclass
class ReaperReport:
    scanned: int = 0
    cancelled: int = 0
    failed: int = 0
    cancelled_ids: list[str] = field(default_factory=list)


class PaymentFailureReaper:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        notifications: NotificationSender,
        *,
        clock: Callable[[], datetime] = utcnow,
        window_hours: float = 24.0,
    ) -> None:
        self._sessions = sessions
        self._notifications = notifications
        self._clock = clock
        self._window = timedelta(hours=window_hours)

    async def run(self, recorder: StepRecorder) -> ReaperReport:
        now = self._clock()
        cutoff = now - self._window

        recorder.started("scan")
        async with self._sessions() as db:
            candidates = await store.find_reapable(db, cutoff)
        report = ReaperReport(scanned=len(candidates))
        recorder.succeeded("scan", detail=f"{len(candidates)} candidate(s)")

        for order_id in candidates:
            try:
                async with self._sessions() as db:
                    cancelled = await store.cancel_if_reapable(db, order_id, cutoff, now)
                    snapshot = await store.load_snapshot(db, order_id) if cancelled else None
            except Exception as exc:
                report.failed += 1
                ORDERS_REAPED.labels("failed").inc()
                logger.exception(
                    "Failed to auto-cancel order",
                    extra={"order_id": order_id, "correlation_id": recorder.correlation_id},
                )
                recorder.failed("cancel", error=f"{type(exc).__name__}: {exc}", order_id=order_id)
                continue

            if not cancelled:
                # Completed or cancelled by someone else since the scan
                recorder.skipped("cancel", detail="no longer eligible", order_id=order_id)
                continue

            report.cancelled += 1
            report.cancelled_ids.append(order_id)
            ORDERS_REAPED.labels("cancelled").inc()
            recorder.succeeded("cancel", detail=store.AUTO_CANCEL_REASON, order_id=order_id)

            if snapshot is not None:
                await notify.send_best_effort(
                    self._sessions,
                    self._notifications,
                    recorder,
                    snapshot,
                    TemplateKind.ORDER_CANCELLED,
                    notify.template_data(snapshot, reason=store.AUTO_CANCEL_REASON),
                    self._clock,
                )

        logger.info(
            "Reaper run finished",
            extra={
                "correlation_id": recorder.correlation_id,
                "scanned": report.scanned,
                "cancelled": report.cancelled,
                "failed": report.failed,
            },
        )
        return report
