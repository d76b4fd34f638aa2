import asyncio
import logging
from typing import Awaitable, Callable

from fulfillment_service.dispatcher import Dispatch, TriggerDispatcher
from fulfillment_service.results import Ok

logger = logging.getLogger(__name__)


async def run_scheduler(
    dispatcher: TriggerDispatcher,
    interval_seconds: float,
    *,
    on_dispatch: Callable[[Dispatch], Awaitable[None]] | None = None,
    stop: asyncio.Event | None = None,
) -> None:
    """Fire ``on_schedule`` every ``interval_seconds`` until ``stop`` is set or the task is cancelled."""
    stop = stop or asyncio.Event()
    logger.info("Scheduler started", extra={"interval_seconds": interval_seconds})

    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
            break
        except asyncio.TimeoutError:
            pass

        try:
            dispatch = await dispatcher.on_schedule()
            if on_dispatch is not None:
                await on_dispatch(dispatch)
        except Exception:
            logger.exception("Scheduled tick failed, will run again next interval")
            continue

        if not isinstance(dispatch.result, Ok):
            logger.error(
                "Scheduled reaper run failed, will run again next interval",
                extra={"result": dispatch.result.label, "error": dispatch.result.error},
            )

    logger.info("Scheduler stopped")
