"""Retry decorators and background task tracking shared by the stores and the catalog."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


def _delays(max_retries: int, initial_delay: float, backoff_factor: float):
    """Sleep durations between attempts; one fewer than max_retries."""
    delay = initial_delay
    for _ in range(max(max_retries - 1, 0)):
        yield delay
        delay *= backoff_factor


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,),
):
    """
    Retry a blocking callable with exponential backoff.

    Used around record-store writes, which may hit a locked SQLite file
    when several writers race. The last exception is re-raised once all
    attempts are exhausted.

    Example:
        @retry_with_backoff(max_retries=3, initial_delay=0.1)
        def persist(delta):
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            delays = _delays(max_retries, initial_delay, backoff_factor)
            attempt = 0
            while True:
                attempt += 1
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    delay = next(delays, None)
                    if delay is None:
                        logger.error(f"{func.__name__} failed after {attempt} attempts: {e}")
                        raise
                    logger.warning(
                        f"{func.__name__} failed (attempt {attempt}/{max_retries}): {e}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    time.sleep(delay)

        return wrapper
    return decorator


def async_retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,),
):
    """
    Async variant of retry_with_backoff for catalog HTTP calls.

    Example:
        @async_retry_with_backoff(max_retries=3, exceptions=(httpx.TransportError,))
        async def fetch(path):
            ...
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            delays = _delays(max_retries, initial_delay, backoff_factor)
            attempt = 0
            while True:
                attempt += 1
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    delay = next(delays, None)
                    if delay is None:
                        logger.error(f"{func.__name__} failed after {attempt} attempts: {e}")
                        raise
                    logger.warning(
                        f"{func.__name__} failed (attempt {attempt}/{max_retries}): {e}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    await asyncio.sleep(delay)

        return wrapper
    return decorator


class BackgroundTasks:
    """
    Fire-and-forget coroutines that are never silently lost.

    Tasks are held until they finish so the event loop cannot garbage
    collect them; failures are logged. drain() waits for everything
    still pending, which tests and shutdown use.
    """

    def __init__(self, name: str = "background"):
        self.name = name
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable[Any], label: str = "") -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._finished(t, label))
        return task

    def _finished(self, task: asyncio.Task, label: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"{self.name} task {label or task.get_name()} failed: {exc!r}")

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def __len__(self) -> int:
        return len(self._tasks)
