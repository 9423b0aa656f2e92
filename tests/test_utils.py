import asyncio
import logging

import pytest

from swipe_rec.utils import BackgroundTasks, async_retry_with_backoff, retry_with_backoff


def test_retry_succeeds_after_transient_failures():
    calls = []

    @retry_with_backoff(max_retries=3, initial_delay=0.0, exceptions=(OSError,))
    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise OSError("locked")
        return "ok"

    assert flaky() == "ok"
    assert len(calls) == 3


def test_retry_reraises_last_error():
    calls = []

    @retry_with_backoff(max_retries=2, initial_delay=0.0, exceptions=(OSError,))
    def always_fails():
        calls.append(1)
        raise OSError(f"attempt {len(calls)}")

    with pytest.raises(OSError, match="attempt 2"):
        always_fails()
    assert len(calls) == 2


def test_retry_ignores_unlisted_exceptions():
    calls = []

    @retry_with_backoff(max_retries=5, initial_delay=0.0, exceptions=(OSError,))
    def wrong_kind():
        calls.append(1)
        raise KeyError("nope")

    with pytest.raises(KeyError):
        wrong_kind()
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_async_retry_succeeds_and_gives_up():
    calls = []

    @async_retry_with_backoff(max_retries=3, initial_delay=0.0, exceptions=(ConnectionError,))
    async def flaky(fail_times):
        calls.append(1)
        if len(calls) <= fail_times:
            raise ConnectionError("reset")
        return len(calls)

    assert await flaky(1) == 2

    calls.clear()
    with pytest.raises(ConnectionError):
        await flaky(10)
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_background_tasks_drain_and_log_failures(caplog):
    tasks = BackgroundTasks("events")
    done = []

    async def ok():
        await asyncio.sleep(0)
        done.append("ok")

    async def boom():
        raise RuntimeError("disk full")

    with caplog.at_level(logging.ERROR, logger="swipe_rec.utils"):
        tasks.spawn(ok(), label="ok")
        tasks.spawn(boom(), label="boom")
        assert len(tasks) == 2
        await tasks.drain()

    assert done == ["ok"]
    assert len(tasks) == 0
    assert any("boom" in r.getMessage() and "disk full" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_drain_picks_up_tasks_spawned_while_draining():
    tasks = BackgroundTasks()
    order = []

    async def child():
        order.append("child")

    async def parent():
        tasks.spawn(child())
        order.append("parent")

    tasks.spawn(parent())
    await tasks.drain()

    assert order == ["parent", "child"]
