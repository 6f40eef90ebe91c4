"""Bounded-concurrency asyncio work queue."""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class QueueClosedError(Exception):
    """push() was called on a queue that no longer accepts work."""


@dataclass
class UnitFailure:
    item: Any
    error: Exception


class TaskQueue(Generic[T, R]):
    """Run ``worker(item)`` for every pushed item, at most ``concurrency`` at a time.

    Items start in FIFO order. A unit that raises is logged and recorded in
    :attr:`errors`; it does not stop the other units and is never retried.
    Return values of successful units are collected in :attr:`results`, in
    completion order. Started units are never cancelled.

    Must be used from inside a running event loop::

        queue = TaskQueue(handle, concurrency=2)
        for item in items:
            queue.push(item)
        await queue.drained()
    """

    def __init__(
        self,
        worker: Callable[[T], Awaitable[R]],
        concurrency: int = 1,
        name: str = "queue",
    ):
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.worker = worker
        self.concurrency = concurrency
        self.name = name
        self.results: list[R] = []
        self.errors: list[UnitFailure] = []
        self._pending: deque[T] = deque()
        self._running = 0
        self._closed = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._tasks: set[asyncio.Task[None]] = set()

    def push(self, item: T) -> None:
        if self._closed:
            raise QueueClosedError(f"{self.name}: queue is closed")
        self._pending.append(item)
        self._idle.clear()
        self._fill()

    def close(self) -> None:
        """Stop accepting new items. Already queued items still run."""
        self._closed = True

    def kill(self) -> int:
        """Drop every queued item that has not started. Returns how many were dropped."""
        dropped = len(self._pending)
        self._pending.clear()
        if dropped:
            log.info("%s: dropped %d pending units", self.name, dropped)
        if self._running == 0:
            self._idle.set()
        return dropped

    async def drained(self) -> None:
        """Wait until nothing is queued and nothing is in flight."""
        await self._idle.wait()

    def _fill(self) -> None:
        while self._pending and self._running < self.concurrency:
            item = self._pending.popleft()
            self._running += 1
            task = asyncio.create_task(self._run(item), name=f"{self.name}-unit")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, item: T) -> None:
        try:
            result = await self.worker(item)
        except Exception as exc:
            log.warning("%s: unit %r failed: %s", self.name, item, exc)
            self.errors.append(UnitFailure(item=item, error=exc))
        else:
            self.results.append(result)
        finally:
            self._running -= 1
            self._fill()
            if self._running == 0 and not self._pending:
                self._idle.set()
