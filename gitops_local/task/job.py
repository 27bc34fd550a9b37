"""A cancellable scheduled job that runs one pass at a time.

Each Application is reconciled by its own job. A job wakes up when one of
its periodic timers is due, when a one-shot delayed trigger fires, or when
it is triggered explicitly. Passes never overlap: triggers arriving while a
pass is running are merged and handled by a single follow-up pass.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging

from .context import get_task_service
from .service import TaskService

__all__ = ["ScheduledJob"]

_LOGGER = logging.getLogger(__name__)

PassCallback = Callable[[frozenset[str]], Awaitable[None]]


@dataclass
class _Timer:
    reason: str
    interval: float
    deadline: float


class ScheduledJob:
    """Runs a callback on timers and explicit triggers, one pass at a time.

    The callback receives the set of reasons that caused the pass. Errors
    raised by the callback are logged and the job keeps running.
    """

    def __init__(
        self,
        name: str,
        callback: PassCallback,
        task_service: TaskService | None = None,
    ) -> None:
        """Initialize the job; it does nothing until `start` is called."""
        self._name = name
        self._callback = callback
        self._task_service = task_service or get_task_service()
        self._timers: dict[str, _Timer] = {}
        self._pending: set[str] = set()
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._delayed: set[asyncio.Task[None]] = set()
        self.passes = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def running(self) -> bool:
        """True while a pass is in progress."""
        return self._running

    def every(self, interval: float, reason: str, immediate: bool = False) -> None:
        """Register a periodic timer producing the given reason.

        Registering a reason again replaces its interval.
        """
        now = asyncio.get_running_loop().time()
        self._timers[reason] = _Timer(reason, interval, now if immediate else now + interval)
        if immediate:
            self._idle.clear()
        self._wakeup.set()

    def trigger(self, reason: str) -> None:
        """Request a pass as soon as possible."""
        _LOGGER.debug("Job %s triggered: %s", self._name, reason)
        self._pending.add(reason)
        self._idle.clear()
        self._wakeup.set()

    def trigger_later(self, delay: float, reason: str) -> None:
        """Request a pass after a delay."""

        async def _later() -> None:
            await asyncio.sleep(delay)
            self.trigger(reason)

        task = self._task_service.create_background_task(
            _later(), name=f"{self._name}-{reason}"
        )
        self._delayed.add(task)
        task.add_done_callback(self._delayed.discard)

    def start(self) -> None:
        """Start the job loop."""
        if self._task is not None:
            return
        self._task = self._task_service.create_background_task(
            self._run(), name=f"job-{self._name}"
        )

    async def stop(self) -> None:
        """Cancel the job loop, including an in-flight pass."""
        tasks = list(self._delayed)
        if self._task is not None:
            tasks.append(self._task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        self._delayed.clear()
        self._idle.set()

    async def wait_idle(self) -> None:
        """Wait until no pass is running and no trigger is pending."""
        await self._idle.wait()

    def _next_timeout(self) -> float | None:
        if not self._timers:
            return None
        now = asyncio.get_running_loop().time()
        return max(min(t.deadline for t in self._timers.values()) - now, 0)

    def _collect_due(self) -> None:
        now = asyncio.get_running_loop().time()
        for timer in self._timers.values():
            if timer.deadline <= now:
                self._pending.add(timer.reason)
                timer.deadline = now + timer.interval

    async def _run(self) -> None:
        _LOGGER.debug("Job %s started", self._name)
        try:
            while True:
                if not self._pending:
                    try:
                        async with asyncio.timeout(self._next_timeout()):
                            await self._wakeup.wait()
                    except TimeoutError:
                        pass
                self._wakeup.clear()
                self._collect_due()
                if not self._pending:
                    continue
                reasons = frozenset(self._pending)
                self._pending.clear()
                self._idle.clear()
                self._running = True
                try:
                    await self._callback(reasons)
                except Exception:
                    _LOGGER.exception("Job %s pass failed for %s", self._name, sorted(reasons))
                finally:
                    self._running = False
                    self.passes += 1
                if not self._pending:
                    self._idle.set()
        finally:
            _LOGGER.debug("Job %s stopped", self._name)
