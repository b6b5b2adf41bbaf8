"""Bounded worker pool for blocking store, cache and hashing calls."""

import asyncio
import functools
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import ParamSpec, TypeVar

from loguru import logger

P = ParamSpec("P")
R = TypeVar("R")


class BlockingExecutor:
    """Runs blocking callables on a fixed-size thread pool.

    The event loop awaits the returned future and resumes once the worker thread
    finishes. Cancelling the awaiting task drops a call that has not started yet;
    a call already running completes, so committed writes are never rolled back
    by cancellation.
    """

    def __init__(self, max_workers: int, thread_name_prefix: str = "users-worker"):
        self._max_workers = max_workers
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=thread_name_prefix
        )
        logger.info("Worker pool started", extra={"max_workers": max_workers})

    @property
    def max_workers(self) -> int:
        return self._max_workers

    async def run(self, func: Callable[P, R], *args: P.args, **kwargs: P.kwargs) -> R:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._pool, functools.partial(func, *args, **kwargs)
        )

    def shutdown(self, wait: bool = True) -> None:
        logger.info("Shutting down worker pool")
        self._pool.shutdown(wait=wait, cancel_futures=True)
