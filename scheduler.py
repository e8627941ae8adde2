"""
scheduler.py
============
Named periodic tasks with explicit, awaitable ticks.

``tick()`` runs one iteration and can be called directly from tests;
``start()`` loops it on an interval until ``stop()``.  An exception inside
a tick is logged and the loop keeps going.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import get_logger

logger = get_logger(__name__)


class PeriodicTask:
    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable[Any]],
        on_error: Optional[Callable[[str, BaseException], None]] = None,
    ) -> None:
        self.name = name
        self.interval = interval
        self.func = func
        self.on_error = on_error
        self.runs = 0
        self.failures = 0
        self.last_result: Any = None
        self.last_run: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    async def tick(self) -> Any:
        """Run once.  Returns the callable's result, or None if it raised."""
        self.last_run = time.time()
        try:
            self.last_result = await self.func()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.failures += 1
            self.last_result = None
            logger.error("Task %s failed: %s", self.name, exc, exc_info=True)
            if self.on_error is not None:
                self.on_error(self.name, exc)
        finally:
            self.runs += 1
        return self.last_result

    async def _loop(self) -> None:
        while True:
            started = time.perf_counter()
            await self.tick()
            elapsed = time.perf_counter() - started
            await asyncio.sleep(max(0.0, self.interval - elapsed))

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name=self.name)
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()


class Scheduler:
    """Owns a set of PeriodicTasks."""

    def __init__(self, on_error: Optional[Callable[[str, BaseException], None]] = None) -> None:
        self.tasks: Dict[str, PeriodicTask] = {}
        self.on_error = on_error

    def add(self, name: str, interval: float, func: Callable[[], Awaitable[Any]]) -> PeriodicTask:
        if name in self.tasks:
            raise ValueError(f"task {name!r} already scheduled")
        task = PeriodicTask(name, interval, func, on_error=self.on_error)
        self.tasks[name] = task
        return task

    async def tick(self, name: str) -> Any:
        return await self.tasks[name].tick()

    async def tick_all(self) -> Dict[str, Any]:
        return {name: await task.tick() for name, task in self.tasks.items()}

    def start(self) -> List[asyncio.Task]:
        logger.info("Scheduler: starting %s", ", ".join(
            f"{t.name}@{t.interval:g}s" for t in self.tasks.values()))
        return [task.start() for task in self.tasks.values()]

    async def stop(self) -> None:
        for task in self.tasks.values():
            await task.stop()

    async def run_forever(self) -> None:
        """Start every task and wait until cancelled."""
        handles = self.start()
        try:
            await asyncio.gather(*handles)
        finally:
            await self.stop()

    def stats(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {"interval": t.interval, "runs": t.runs, "failures": t.failures,
                   "last_run": t.last_run, "running": t.running}
            for name, t in self.tasks.items()
        }
