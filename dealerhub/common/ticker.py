"""Cancellable periodic loop used for scheduler jobs."""

import asyncio
from collections.abc import Awaitable, Callable

from dealerhub.common.logging import logger
from dealerhub.common.metrics import scheduler_tick_errors_total


async def run_every(job: str, interval_seconds: float, tick: Callable[[], Awaitable[object]]) -> None:
    """Sleep `interval_seconds`, run `tick`, repeat until cancelled.

    A failing tick is logged and counted; the next tick runs normally.
    """

    logger.info("ticker started job=%s interval_s=%s", job, interval_seconds)
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await tick()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            scheduler_tick_errors_total.labels(job=job).inc()
            logger.exception("ticker error job=%s error=%s", job, exc)
