"""Background scheduling primitives.

``PeriodicTask`` re-arms a timer on a fixed interval and spawns one unit of
work per tick, publishing each outcome on an ``asyncio.Queue``. Ticks do not
wait for earlier work to finish, so work that must never overlap is wrapped
in a ``SingleFlight`` guard.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterator, Optional, Set


logger = logging.getLogger("relaytrade.scheduler")


class SingleFlight:
    """At most one execution in flight.

    Entry is a compare-and-swap of the busy flag from False to True under a
    lock; a caller that loses the swap must not start work. The flag is reset
    on exit whether the work succeeded or raised.
    """

    def __init__(self, name: str = "single-flight"):
        self.name = name
        self._lock = threading.Lock()
        self._busy = False
        self.runs = 0
        self.skipped = 0

    @property
    def in_flight(self) -> bool:
        with self._lock:
            return self._busy

    def try_acquire(self) -> bool:
        with self._lock:
            if self._busy:
                self.skipped += 1
                return False
            self._busy = True
            self.runs += 1
            return True

    def release(self) -> None:
        with self._lock:
            self._busy = False

    @contextmanager
    def enter(self) -> Iterator[bool]:
        acquired = self.try_acquire()
        try:
            yield acquired
        finally:
            if acquired:
                self.release()


@dataclass(frozen=True)
class TaskOutcome:
    name: str
    value: Any = None
    error: Optional[BaseException] = None
    skipped: bool = False
    finished_at: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped


class PeriodicTask:
    def __init__(
        self,
        name: str,
        interval: float,
        work: Callable[[], Awaitable[Any]],
        *,
        results: Optional["asyncio.Queue[TaskOutcome]"] = None,
        guard: Optional[SingleFlight] = None,
        run_immediately: bool = True,
    ):
        self.name = name
        self.interval = float(interval)
        self.work = work
        self.results = results
        self.guard = guard
        self.run_immediately = run_immediately
        self._timer: Optional["asyncio.Task[None]"] = None
        self._inflight: Set["asyncio.Task[None]"] = set()

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def start(self) -> None:
        if self.running:
            return
        self._timer = asyncio.create_task(self._loop(), name=f"timer:{self.name}")

    async def stop(self) -> None:
        tasks = [t for t in [self._timer, *self._inflight] if t is not None]
        for t in tasks:
            t.cancel()
        for t in tasks:
            try:
                await t
            except asyncio.CancelledError:
                pass
        self._timer = None
        self._inflight.clear()

    async def _loop(self) -> None:
        if not self.run_immediately:
            await asyncio.sleep(self.interval)
        while True:
            self.tick()
            await asyncio.sleep(self.interval)

    def tick(self) -> "asyncio.Task[None]":
        task = asyncio.create_task(self.run_once(), name=f"work:{self.name}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    def _publish(self, outcome: TaskOutcome) -> None:
        if self.results is not None:
            self.results.put_nowait(outcome)

    async def run_once(self) -> None:
        if self.guard is None:
            await self._execute()
            return
        with self.guard.enter() as acquired:
            if not acquired:
                logger.debug("%s: previous run still in flight, skipping tick", self.name)
                self._publish(TaskOutcome(self.name, skipped=True, finished_at=time.time()))
                return
            await self._execute()

    async def _execute(self) -> None:
        try:
            value = await self.work()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("%s failed: %s", self.name, e)
            self._publish(TaskOutcome(self.name, error=e, finished_at=time.time()))
            return
        self._publish(TaskOutcome(self.name, value=value, finished_at=time.time()))
