"""Async concurrency primitives used by the tier scheduler and dimension phases."""

from __future__ import annotations

import asyncio
import inspect
from collections import deque
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise asyncio.CancelledError("operation cancelled")


class FifoSemaphore:
    """Counting semaphore with FIFO waiters and direct permit hand-off.

    ``release`` never increments the pool while a waiter is queued; the permit
    goes straight to the oldest waiter, so a late ``acquire`` can never jump
    the queue. ``holders + available == limit`` at every await point.
    """

    def __init__(self, permits: int) -> None:
        if permits <= 0:
            raise ValueError("permits must be > 0")
        self._limit = permits
        self._available = permits
        self._holders = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return self._holders

    @property
    def available(self) -> int:
        return self._available

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> None:
        if self._available > 0:
            self._available -= 1
            self._holders += 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Granted and cancelled in the same tick: pass the permit on.
                self._holders -= 1
                self._grant_next()
            else:
                with suppress(ValueError):
                    self._waiters.remove(waiter)
            raise

    def release(self) -> None:
        if self._holders <= 0:
            raise RuntimeError("release called more times than acquire")
        self._holders -= 1
        self._grant_next()

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def snapshot(self) -> dict[str, int]:
        return {
            "limit": self._limit,
            "in_use": self._holders,
            "available": self._available,
            "waiting": self.waiting,
        }

    def _grant_next(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self._holders += 1
            waiter.set_result(None)
            return
        self._available += 1


async def run_with_timeout(
    coroutine: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
    *,
    label: str = "operation",
) -> T:
    """Await ``coroutine`` racing a deadline and an optional cancellation token.

    The inner task is cancelled on either outcome. A deadline raises
    ``TimeoutError``; a token cancellation raises ``asyncio.CancelledError``.
    """
    if timeout_seconds <= 0:
        _close_unscheduled_coroutine(coroutine)
        raise ValueError("timeout_seconds must be > 0")

    token = cancel_token or CancellationToken()
    if token.is_cancelled:
        _close_unscheduled_coroutine(coroutine)
        raise asyncio.CancelledError(f"{label} cancelled")

    task: asyncio.Task[T] = asyncio.ensure_future(coroutine)
    cancel_wait_task = asyncio.ensure_future(token.wait())

    try:
        done, _ = await asyncio.wait(
            {task, cancel_wait_task},
            timeout=timeout_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )

        if task in done:
            return task.result()

        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

        if cancel_wait_task in done:
            raise asyncio.CancelledError(f"{label} cancelled")
        raise TimeoutError(f"{label} timed out after {timeout_seconds:g}s")
    finally:
        if not task.done():
            task.cancel()
        cancel_wait_task.cancel()
        with suppress(asyncio.CancelledError):
            await cancel_wait_task


def _close_unscheduled_coroutine(awaitable: Awaitable[object]) -> None:
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "CancellationToken",
    "FifoSemaphore",
    "run_with_timeout",
]
