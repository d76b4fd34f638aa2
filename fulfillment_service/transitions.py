"""
Transition ledger: one row per (order_id, payment transition).

The row is both the idempotency key for a payment transition and the place
where the payment-completed pipeline checkpoints the side effects it has
already performed, so a redelivered event resumes instead of repeating them.

Only ``claim`` commits; every other helper writes into the caller's session
so it lands in the same transaction as the order mutation it belongs to.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment_service.models import FulfillmentTransition, TransitionStatus

logger = logging.getLogger(__name__)

COMPLETED = "completed"
FAILED = "failed"


class ClaimState(str, Enum):
    ACQUIRED = "acquired"
    DUPLICATE = "duplicate"  # already done or skipped
    IN_FLIGHT = "in_flight"  # another run holds a live lease


@dataclass(frozen=True)
class Claim:
    state: ClaimState
    attempts: int = 1
    invoice_url: str | None = None
    invoice_generated_at: datetime | None = None
    inventory_adjusted_at: datetime | None = None


def _key(order_id: str, transition: str):
    return (
        FulfillmentTransition.order_id == order_id,
        FulfillmentTransition.transition == transition,
    )


async def claim(
    db: AsyncSession,
    order_id: str,
    transition: str,
    *,
    now: datetime,
    lease_seconds: float,
) -> Claim:
    db.add(
        FulfillmentTransition(
            order_id=order_id,
            transition=transition,
            status=TransitionStatus.IN_PROGRESS,
            claimed_at=now,
            attempts=1,
            created_at=now,
        )
    )
    try:
        await db.commit()
        return Claim(ClaimState.ACQUIRED)
    except IntegrityError:
        await db.rollback()

    # Row exists: take it over only if it is unfinished and its lease is free or expired
    stale_before = now - timedelta(seconds=lease_seconds)
    result = await db.execute(
        update(FulfillmentTransition)
        .where(
            *_key(order_id, transition),
            FulfillmentTransition.status == TransitionStatus.IN_PROGRESS,
            or_(
                FulfillmentTransition.claimed_at.is_(None),
                FulfillmentTransition.claimed_at <= stale_before,
            ),
        )
        .values(claimed_at=now, attempts=FulfillmentTransition.attempts + 1)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    acquired = result.rowcount == 1

    record = await db.get(
        FulfillmentTransition, (order_id, transition), populate_existing=True
    )
    if record is None:
        # Cannot happen unless the row was deleted between the insert and the update
        return Claim(ClaimState.IN_FLIGHT)

    if acquired:
        logger.info(
            "Resuming transition",
            extra={"order_id": order_id, "transition": transition, "attempts": record.attempts},
        )
        return Claim(
            ClaimState.ACQUIRED,
            attempts=record.attempts,
            invoice_url=record.invoice_url,
            invoice_generated_at=record.invoice_generated_at,
            inventory_adjusted_at=record.inventory_adjusted_at,
        )
    if record.status in (TransitionStatus.DONE, TransitionStatus.SKIPPED):
        return Claim(ClaimState.DUPLICATE, attempts=record.attempts)
    return Claim(ClaimState.IN_FLIGHT, attempts=record.attempts)


async def save_invoice(
    db: AsyncSession, order_id: str, transition: str, url: str, generated_at: datetime
) -> None:
    await db.execute(
        update(FulfillmentTransition)
        .where(*_key(order_id, transition))
        .values(invoice_url=url, invoice_generated_at=generated_at)
        .execution_options(synchronize_session=False)
    )


async def mark_inventory_adjusted(
    db: AsyncSession, order_id: str, transition: str, at: datetime
) -> None:
    await db.execute(
        update(FulfillmentTransition)
        .where(*_key(order_id, transition))
        .values(inventory_adjusted_at=at)
        .execution_options(synchronize_session=False)
    )


async def finish(
    db: AsyncSession,
    order_id: str,
    transition: str,
    status: TransitionStatus,
    at: datetime,
) -> None:
    await db.execute(
        update(FulfillmentTransition)
        .where(*_key(order_id, transition))
        .values(status=status, claimed_at=None, completed_at=at)
        .execution_options(synchronize_session=False)
    )


async def release(db: AsyncSession, order_id: str, transition: str) -> None:
    """Drop the lease of a failed run so the redelivered event can take over at once."""
    await db.execute(
        update(FulfillmentTransition)
        .where(
            *_key(order_id, transition),
            FulfillmentTransition.status == TransitionStatus.IN_PROGRESS,
        )
        .values(claimed_at=None)
        .execution_options(synchronize_session=False)
    )


class TransitionGuard:
    """Claims and releases ledger rows using short-lived sessions of its own."""

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime],
        lease_seconds: float,
    ) -> None:
        self._sessions = sessions
        self._clock = clock
        self._lease_seconds = lease_seconds

    async def claim(self, order_id: str, transition: str) -> Claim:
        async with self._sessions() as db:
            return await claim(
                db, order_id, transition, now=self._clock(), lease_seconds=self._lease_seconds
            )

    async def skip(self, order_id: str, transition: str) -> None:
        async with self._sessions() as db:
            await finish(db, order_id, transition, TransitionStatus.SKIPPED, self._clock())
            await db.commit()

    async def release(self, order_id: str, transition: str) -> None:
        # Called while another exception is propagating; that one must win
        try:
            async with self._sessions() as db:
                await release(db, order_id, transition)
                await db.commit()
        except SQLAlchemyError:
            logger.exception(
                "Could not release transition lease, it will expire on its own",
                extra={"order_id": order_id, "transition": transition},
            )
