import asyncio

import pytest
from sqlalchemy import exc as sa_exc

from app.core.errors import ComputationFailure
from app.core.retry import RetryConfig, calculate_delay, is_retryable_exception, retry_async
from app.core.tasks import TaskManager

NO_WAIT = RetryConfig(max_attempts=3, base_delay=0, max_delay=0, jitter=0)


def _operational_error():
    return sa_exc.OperationalError("SELECT 1", {}, Exception("server closed the connection"))


def test_delay_grows_and_is_capped():
    config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=0)
    assert calculate_delay(0, config) == 1.0
    assert calculate_delay(2, config) == 4.0
    assert calculate_delay(10, config) == 5.0


def test_computation_failure_is_judged_by_its_cause():
    transient = ComputationFailure(1, "cascade", _operational_error())
    permanent = ComputationFailure(1, "direct", ValueError("bad restriction mode"))
    assert is_retryable_exception(transient, NO_WAIT)
    assert not is_retryable_exception(permanent, NO_WAIT)


async def test_retries_transient_errors_until_success():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise _operational_error()
        return "done"

    assert await retry_async(flaky, config=NO_WAIT) == "done"
    assert len(calls) == 3


async def test_non_retryable_error_raises_immediately():
    calls = []

    async def broken():
        calls.append(1)
        raise ValueError("nope")

    with pytest.raises(ValueError):
        await retry_async(broken, config=NO_WAIT)
    assert len(calls) == 1


async def test_gives_up_after_max_attempts():
    calls = []

    async def always_down():
        calls.append(1)
        raise ConnectionError("refused")

    with pytest.raises(ConnectionError):
        await retry_async(always_down, config=NO_WAIT)
    assert len(calls) == 3


async def test_task_manager_runs_error_handler_and_tracks_names():
    TaskManager.reset_instance()
    manager = TaskManager.get_instance()
    seen = []

    async def fails():
        raise RuntimeError("boom")

    async def on_error(e):
        seen.append(str(e))

    gate = asyncio.Event()

    async def waits():
        await gate.wait()

    failing = manager.create_task(fails(), name="fails", on_error=on_error)
    waiting = manager.create_task(waits(), name="waits")
    await asyncio.sleep(0.01)

    assert seen == ["boom"]
    assert isinstance(failing.exception(), RuntimeError)
    assert manager.get_task_stats()["failed"] == 1
    assert manager.get_task("fails") is None
    assert manager.get_task("waits") is waiting

    gate.set()
    await manager.drain()
    assert manager.get_running_tasks() == []
    TaskManager.reset_instance()
