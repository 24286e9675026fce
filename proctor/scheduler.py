"""
Tick drivers for the collectors.

The asyncio scheduler runs every job on the event loop; the manual scheduler
fires the same jobs against a virtual clock so timing can be tested without
real timers.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class Clock:
    def now(self) -> float:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> float:
        return time.time()


class VirtualClock(Clock):
    def __init__(self, start: float = 0.0):
        self.current = start

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> float:
        self.current += seconds
        return self.current


@dataclass
class Job:
    id: int
    name: str
    interval: float
    callback: Callable[[], Any]
    next_due: float = 0.0
    task: Optional[asyncio.Task] = field(default=None, repr=False)
    failures: int = 0


def _run_guarded(job: Job) -> Any:
    try:
        return job.callback()
    except Exception:
        job.failures += 1
        logger.exception("job %s failed (%d failures)", job.name, job.failures)
        return None


class Scheduler:
    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self.jobs: Dict[int, Job] = {}
        self._ids = itertools.count(1)

    def every(self, interval: float, callback: Callable[[], Any], name: str = "") -> Job:
        job = Job(
            id=next(self._ids),
            name=name or getattr(callback, "__qualname__", "job"),
            interval=max(float(interval), 1e-3),
            callback=callback,
            next_due=self.clock.now() + interval,
        )
        self.jobs[job.id] = job
        self._schedule(job)
        return job

    def cancel(self, job: Optional[Job]) -> None:
        if job is None:
            return
        self.jobs.pop(job.id, None)
        self._unschedule(job)

    def stop(self) -> None:
        for job in list(self.jobs.values()):
            self.cancel(job)

    def _schedule(self, job: Job) -> None:
        pass

    def _unschedule(self, job: Job) -> None:
        pass


class AsyncioScheduler(Scheduler):
    def __init__(self, clock: Optional[Clock] = None, loop: Optional[asyncio.AbstractEventLoop] = None):
        super().__init__(clock)
        self.loop = loop

    def _schedule(self, job: Job) -> None:
        loop = self.loop or asyncio.get_running_loop()
        job.task = loop.create_task(self._run(job))

    def _unschedule(self, job: Job) -> None:
        if job.task and not job.task.done():
            job.task.cancel()

    async def _run(self, job: Job) -> None:
        while job.id in self.jobs:
            await asyncio.sleep(job.interval)
            result = _run_guarded(job)
            if inspect.isawaitable(result):
                try:
                    await result
                except asyncio.CancelledError:
                    raise
                except Exception:
                    job.failures += 1
                    logger.exception("job %s failed (%d failures)", job.name, job.failures)


class ManualScheduler(Scheduler):
    """
    Fires due jobs in time order as the virtual clock is advanced. Ticks that
    hand work off (return an awaitable) are parked until `drain()`.
    """

    def __init__(self, clock: Optional[VirtualClock] = None):
        super().__init__(clock or VirtualClock())
        self.pending: List[Any] = []

    def advance(self, seconds: float) -> None:
        target = self.clock.now() + seconds
        while True:
            due: List[Job] = [job for job in self.jobs.values() if job.next_due <= target]
            if not due:
                break
            job = min(due, key=lambda j: (j.next_due, j.id))
            self.clock.current = max(self.clock.current, job.next_due)
            job.next_due += job.interval
            result = _run_guarded(job)
            if inspect.isawaitable(result):
                self.pending.append(result)
        self.clock.current = target

    async def drain(self) -> None:
        pending, self.pending = self.pending, []
        for awaitable in pending:
            await awaitable
