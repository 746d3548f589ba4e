from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


async def run_cancellable(awaitable: Awaitable[T], cancel: asyncio.Event | None) -> T:
    """Await ``awaitable`` but abort it promptly once ``cancel`` is set.

    Raises asyncio.CancelledError when the signal fires first.
    """
    if cancel is None:
        return await awaitable
    if cancel.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise asyncio.CancelledError("operation cancelled by caller")

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        waiter.cancel()

    if work in done:
        return work.result()

    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    raise asyncio.CancelledError("operation cancelled by caller")


async def cancellable_sleep(seconds: float, cancel: asyncio.Event | None) -> None:
    await run_cancellable(asyncio.sleep(seconds), cancel)


async def run_periodically(
    name: str,
    job: Callable[[asyncio.Event | None], Awaitable[Any]],
    interval_seconds: float,
    initial_delay_seconds: float = 0,
    cancel: asyncio.Event | None = None,
) -> None:
    """Call ``job`` every ``interval_seconds`` until ``cancel`` is set.

    A failing run is logged and the loop keeps going.
    """
    logger.info(f"{name} started (interval {interval_seconds}s)")
    try:
        await cancellable_sleep(initial_delay_seconds, cancel)
        while cancel is None or not cancel.is_set():
            try:
                await job(cancel)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"{name} run failed: {exc}")
            await cancellable_sleep(interval_seconds, cancel)
    except asyncio.CancelledError:
        logger.info(f"{name} stopped")
        if cancel is None or not cancel.is_set():
            raise
