import asyncio
import logging
import time
from typing import Awaitable, Callable, Iterable, List, Optional


logger = logging.getLogger(__name__)


async def run_periodic(
    name: str,
    interval: float,
    func: Callable[[], Awaitable[None]],
    stop_event: asyncio.Event,
    on_error: Optional[Callable[[str, BaseException], None]] = None,
    on_tick: Optional[Callable[[str, float], None]] = None,
) -> None:
    """Run ``func`` every ``interval`` seconds until ``stop_event`` is set.

    Each iteration waits for the next tick or the stop signal, then runs to
    completion before the next wait starts, so iterations never overlap.
    Exceptions are logged and the loop continues on the next tick.
    """
    logger.debug("Periodic task %s started (interval=%ss)", name, interval)
    while not stop_event.is_set():
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
            break
        except asyncio.TimeoutError:
            pass

        started = time.monotonic()
        try:
            await func()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Periodic task %s failed: %s", name, exc)
            if on_error is not None:
                on_error(name, exc)
        finally:
            if on_tick is not None:
                on_tick(name, time.monotonic() - started)
    logger.debug("Periodic task %s stopped", name)


async def shutdown_tasks(
    tasks: Iterable[asyncio.Task],
    grace: float = 5.0,
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    """Wait up to ``grace`` seconds for tasks to exit, then cancel the rest."""
    task_list: List[asyncio.Task] = [t for t in tasks if t is not None]
    try:
        if task_list:
            _, pending = await asyncio.wait(task_list, timeout=grace)
            for t in pending:
                t.cancel()
            await asyncio.gather(*task_list, return_exceptions=True)
    finally:
        if cleanup is not None:
            await cleanup()
