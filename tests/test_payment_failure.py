"""Payment-failed handler and the reaper that auto-cancels unpaid orders."""

import asyncio
from datetime import timedelta

from fulfillment_service import store
from fulfillment_service.dispatcher import Dispatch
from fulfillment_service.models import TransitionStatus
from fulfillment_service.results import Ok
from fulfillment_service.scheduler import run_scheduler
from fulfillment_service.steps import StepRecorder
from fulfillment_service.transitions import FAILED
from shared.order_state import OrderStatus, PaymentStatus


async def _failed_order(factory, order_id: str, created_at=None, **columns):
    """An order whose failed payment has already been recorded by the handler."""
    columns.setdefault("order_status", OrderStatus.PAYMENT_FAILED)
    columns.setdefault("auto_cancel", True)
    return await factory.order(
        [("P1", 1)],
        order_id=order_id,
        created_at=created_at,
        payment_status=PaymentStatus.FAILED,
        **columns,
    )


class TestPaymentFailedHandler:
    async def test_failure_schedules_auto_cancellation(self, factory, dispatcher, stub, clock):
        await factory.order([("P1", 1)], order_id="ord-1002")
        clock.advance(minutes=30)
        failed_at = clock()

        event = await factory.set_payment("ord-1002", PaymentStatus.FAILED, reason="card declined")
        dispatch = await dispatcher.on_order_updated(event)

        assert dispatch.result == Ok("payment failure recorded")
        order = await factory.get("ord-1002")
        assert order.order_status == OrderStatus.PAYMENT_FAILED
        assert order.payment_failed_at == failed_at
        assert order.payment_failure_reason == "card declined"
        assert order.cancellation_scheduled_for == failed_at + timedelta(hours=24)
        assert order.auto_cancel is True
        assert (await factory.transition("ord-1002", FAILED)).status == TransitionStatus.DONE

        (payload,) = stub.notifications()
        assert payload["template"] == "payment_failed"
        assert payload["data"]["reason"] == "card declined"

    async def test_reason_defaults_when_gateway_gives_none(self, factory, dispatcher):
        await factory.order([("P1", 1)], order_id="no-reason")
        event = await factory.set_payment("no-reason", PaymentStatus.FAILED)
        event.after.payment_error = None

        await dispatcher.on_order_updated(event)

        assert (await factory.get("no-reason")).payment_failure_reason == "Payment declined"

    async def test_duplicate_failure_event_is_ignored(self, factory, dispatcher, stub, clock):
        await factory.order([("P1", 1)], order_id="twice")
        event = await factory.set_payment("twice", PaymentStatus.FAILED, reason="card declined")

        await dispatcher.on_order_updated(event)
        first_failed_at = (await factory.get("twice")).payment_failed_at
        clock.advance(minutes=5)
        second = await dispatcher.on_order_updated(event)

        assert second.result == Ok("duplicate")
        assert (await factory.get("twice")).payment_failed_at == first_failed_at
        assert stub.templates().count("payment_failed") == 1

    async def test_failure_superseded_by_completion_is_skipped(self, factory, dispatcher, stub):
        await factory.product("P1", stock=3)
        await factory.order([("P1", 1)], order_id="raced")
        failed = await factory.set_payment("raced", PaymentStatus.FAILED)
        completed = await factory.set_payment("raced", PaymentStatus.COMPLETED)

        # The completion is handled first; the failure event arrives late
        await dispatcher.on_order_updated(completed)
        dispatch = await dispatcher.on_order_updated(failed)

        assert dispatch.result == Ok("superseded")
        order = await factory.get("raced")
        assert order.order_status == OrderStatus.PROCESSING
        assert order.auto_cancel is False
        assert (await factory.transition("raced", FAILED)).status == TransitionStatus.SKIPPED
        assert "payment_failed" not in stub.templates()


class TestReaper:
    async def test_order_is_reaped_only_after_the_window(self, factory, dispatcher, clock):
        created = clock()
        await factory.order([("P1", 1)], order_id="ord-1002", created_at=created)
        clock.advance(hours=1)
        event = await factory.set_payment("ord-1002", PaymentStatus.FAILED, reason="card declined")
        await dispatcher.on_order_updated(event)

        clock.now = created + timedelta(hours=23)
        early = await dispatcher.on_schedule()
        assert early.result.value.cancelled == 0
        assert (await factory.get("ord-1002")).order_status == OrderStatus.PAYMENT_FAILED

        clock.now = created + timedelta(hours=25)
        late = await dispatcher.on_schedule()
        assert late.result.value.cancelled == 1
        order = await factory.get("ord-1002")
        assert order.order_status == OrderStatus.CANCELLED
        assert order.cancelled_at == clock()
        assert order.cancel_reason == "Auto-cancelled: Payment not completed within 24 hours"

    async def test_predicate_is_exact(self, factory, reaper, clock):
        old = clock() - timedelta(hours=30)
        await _failed_order(factory, "eligible", created_at=old)
        await _failed_order(factory, "exactly-24h", created_at=clock() - timedelta(hours=24))
        await _failed_order(factory, "too-recent", created_at=clock() - timedelta(hours=23, minutes=59))
        await _failed_order(factory, "no-auto-cancel", created_at=old, auto_cancel=False)
        await factory.order([("P1", 1)], order_id="pending-payment", created_at=old, auto_cancel=True)
        await _failed_order(
            factory, "already-cancelled", created_at=old, order_status=OrderStatus.CANCELLED
        )
        await _failed_order(factory, "delivered", created_at=old, order_status=OrderStatus.DELIVERED)

        report = await reaper.run(StepRecorder("schedule", "test"))

        assert sorted(report.cancelled_ids) == ["eligible", "exactly-24h"]
        assert report.scanned == 2
        assert (await factory.get("too-recent")).order_status == OrderStatus.PAYMENT_FAILED
        assert (await factory.get("no-auto-cancel")).order_status == OrderStatus.PAYMENT_FAILED
        assert (await factory.get("pending-payment")).order_status == OrderStatus.PENDING

    async def test_one_failing_order_does_not_stop_the_batch(self, factory, reaper, clock, monkeypatch):
        old = clock() - timedelta(hours=48)
        for n, order_id in enumerate(["first", "second", "third"]):
            await _failed_order(factory, order_id, created_at=old + timedelta(minutes=n))

        real_cancel = store.cancel_if_reapable

        async def flaky_cancel(db, order_id, cutoff, now):
            if order_id == "second":
                raise RuntimeError("write failed")
            return await real_cancel(db, order_id, cutoff, now)

        monkeypatch.setattr(store, "cancel_if_reapable", flaky_cancel)
        recorder = StepRecorder("schedule", "test")

        report = await reaper.run(recorder)

        assert (report.scanned, report.cancelled, report.failed) == (3, 2, 1)
        assert (await factory.get("first")).order_status == OrderStatus.CANCELLED
        assert (await factory.get("second")).order_status == OrderStatus.PAYMENT_FAILED
        assert (await factory.get("third")).order_status == OrderStatus.CANCELLED
        (failure,) = [e for e in recorder.events if e.outcome == "failed"]
        assert failure.order_id == "second"

    async def test_second_run_finds_nothing_to_cancel(self, factory, dispatcher, stub, clock):
        await _failed_order(factory, "once", created_at=clock() - timedelta(hours=30))

        first = await dispatcher.on_schedule()
        cancelled_at = (await factory.get("once")).cancelled_at
        clock.advance(hours=1)
        second = await dispatcher.on_schedule()

        assert isinstance(first.result, Ok) and isinstance(second.result, Ok)
        assert first.result.value.cancelled == 1
        assert second.result.value.scanned == 0
        assert second.result.value.cancelled == 0
        order = await factory.get("once")
        assert order.order_status == OrderStatus.CANCELLED
        assert order.cancelled_at == cancelled_at
        assert stub.templates().count("order_cancelled") == 1

    async def test_order_completed_after_scan_is_left_alone(self, factory, sessions, clock):
        await _failed_order(factory, "paid-in-time", created_at=clock() - timedelta(hours=30))
        cutoff = clock() - timedelta(hours=24)
        async with sessions() as db:
            assert await store.find_reapable(db, cutoff) == ["paid-in-time"]

        await factory.set_payment("paid-in-time", PaymentStatus.COMPLETED)
        async with sessions() as db:
            cancelled = await store.cancel_if_reapable(db, "paid-in-time", cutoff, clock())

        assert cancelled is False
        assert (await factory.get("paid-in-time")).order_status == OrderStatus.PAYMENT_FAILED


class TestScheduler:
    async def test_ticks_dispatch_the_reaper_and_survive_failures(self, dispatcher, monkeypatch):
        seen: list[Dispatch] = []
        stop = asyncio.Event()
        calls = 0
        real_on_schedule = dispatcher.on_schedule

        async def on_schedule():
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("tick blew up")
            return await real_on_schedule()

        async def on_dispatch(dispatch: Dispatch) -> None:
            seen.append(dispatch)
            if len(seen) == 2:
                stop.set()

        monkeypatch.setattr(dispatcher, "on_schedule", on_schedule)

        await asyncio.wait_for(
            run_scheduler(dispatcher, 0.01, on_dispatch=on_dispatch, stop=stop), timeout=5
        )

        assert calls == 3
        assert all(isinstance(d.result, Ok) for d in seen)

    async def test_stops_promptly_when_asked(self, dispatcher):
        stop = asyncio.Event()
        stop.set()

        await asyncio.wait_for(run_scheduler(dispatcher, 3600, stop=stop), timeout=1)
