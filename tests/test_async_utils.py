import asyncio
import sys
import time

sys.path.insert(0, '.')

from monitoring.async_utils import run_periodic, shutdown_tasks


def test_periodic_task_runs_until_stopped():
    calls = []

    async def _run():
        stop = asyncio.Event()

        async def work():
            calls.append(time.monotonic())

        task = asyncio.create_task(run_periodic('work', 0.01, work, stop))
        await asyncio.sleep(0.1)
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)

    asyncio.run(_run())
    assert len(calls) >= 3


def test_iterations_never_overlap():
    state = {'active': 0, 'max_active': 0, 'runs': 0}

    async def _run():
        stop = asyncio.Event()

        async def slow():
            state['active'] += 1
            state['max_active'] = max(state['max_active'], state['active'])
            await asyncio.sleep(0.03)
            state['active'] -= 1
            state['runs'] += 1

        task = asyncio.create_task(run_periodic('slow', 0.001, slow, stop))
        await asyncio.sleep(0.2)
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)

    asyncio.run(_run())
    assert state['runs'] >= 2
    assert state['max_active'] == 1


def test_errors_are_reported_and_loop_continues():
    errors = []
    ticks = []

    async def _run():
        stop = asyncio.Event()
        attempts = {'n': 0}

        async def flaky():
            attempts['n'] += 1
            if attempts['n'] == 1:
                raise RuntimeError('boom')

        task = asyncio.create_task(run_periodic(
            'flaky', 0.01, flaky, stop,
            on_error=lambda name, exc: errors.append((name, str(exc))),
            on_tick=lambda name, seconds: ticks.append(name),
        ))
        await asyncio.sleep(0.1)
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)
        return attempts['n']

    attempts = asyncio.run(_run())
    assert errors == [('flaky', 'boom')]
    assert attempts >= 2
    assert len(ticks) == attempts


def test_stop_is_observed_within_one_interval():
    async def _run():
        stop = asyncio.Event()

        async def noop():
            pass

        task = asyncio.create_task(run_periodic('idle', 30.0, noop, stop))
        await asyncio.sleep(0.01)
        started = time.monotonic()
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)
        return time.monotonic() - started

    assert asyncio.run(_run()) < 1.0


def test_shutdown_cancels_tasks_past_grace():
    cleaned = []

    async def _run():
        async def forever():
            await asyncio.sleep(3600)

        async def quick():
            return 1

        slow_task = asyncio.create_task(forever())
        quick_task = asyncio.create_task(quick())

        async def cleanup():
            cleaned.append(True)

        await shutdown_tasks([slow_task, quick_task], grace=0.05, cleanup=cleanup)
        return slow_task, quick_task

    slow_task, quick_task = asyncio.run(_run())
    assert slow_task.cancelled()
    assert quick_task.result() == 1
    assert cleaned == [True]
