"""
Tanklink Task Coordinator - periodic producer/consumer tasks on asyncio.

Producers run strictly on their own timer and wake their consumers after every
cycle. Consumers block until woken or until their fallback timer elapses, run
one pass, then hold their minimum delay before waiting again. Wake signals
coalesce: any number of sends before a wait produce exactly one pass.

A watchdog task checks that every task keeps completing cycles; a stall raises
LivenessFault out of TaskCoordinator.run() and the process is restarted.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from errors import LivenessFault

logger = logging.getLogger("task_coordinator")

Cycle = Callable[[], Awaitable[Any]]


# ============ Signals ============

class WakeSignal:
    """Binary, coalescing cross-task notification."""

    def __init__(self, name: str = ""):
        self.name = name
        self._event = asyncio.Event()

    def send(self):
        self._event.set()

    @property
    def pending(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for a wake or the timeout. Returns True if woken.

        The signal is cleared on return so sends that arrive while the caller
        works trigger one more pass.
        """
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
            woken = True
        except asyncio.TimeoutError:
            woken = False
        self._event.clear()
        return woken


class Mailbox:
    """
    Latest-value handoff from one producer to its readers.

    Values must be immutable; readers get the last one put, never a queue.
    """

    def __init__(self, initial: Any = None):
        self._value = initial
        self.updated_at: Optional[float] = None

    def put(self, value: Any):
        self._value = value
        self.updated_at = time.monotonic()

    def get(self) -> Any:
        return self._value


# ============ Watchdog ============

class LivenessWatchdog:
    """
    Tracks per-task heartbeats; check() raises LivenessFault on a stall.

    A task is stalled when no cycle completed within its idle time (the
    scheduled waiting between cycles) plus timeout_s.
    """

    def __init__(self, timeout_s: float = 60.0):
        self.timeout_s = timeout_s
        self._last_feed: Dict[str, float] = {}
        self._idle: Dict[str, float] = {}

    def register(self, name: str, idle_s: float = 0.0):
        self._last_feed[name] = time.monotonic()
        self._idle[name] = idle_s

    def feed(self, name: str):
        if name in self._last_feed:
            self._last_feed[name] = time.monotonic()

    def stalled(self) -> List[str]:
        now = time.monotonic()
        return [
            name for name, fed in self._last_feed.items()
            if now - fed > self._idle[name] + self.timeout_s
        ]

    def check(self):
        stalled = self.stalled()
        if stalled:
            raise LivenessFault(stalled)


# ============ Tasks ============

class PeriodicTask:
    """Base for a named task with a minimum delay between cycles."""

    def __init__(self, name: str, cycle: Cycle, delay_s: float):
        self.name = name
        self.cycle = cycle
        self.delay_s = delay_s
        self.cycles = 0
        self.failures = 0
        self.watchdog: Optional[LivenessWatchdog] = None

    async def run_once(self):
        """Run one cycle, containing any error so the loop keeps going."""
        try:
            await self.cycle()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.exception(f"{self.name}: cycle failed: {e}")
        self.cycles += 1
        if self.watchdog:
            self.watchdog.feed(self.name)

    @property
    def idle_s(self) -> float:
        """Longest scheduled wait between two completed cycles."""
        return self.delay_s

    async def run(self):
        raise NotImplementedError


class ProducerTask(PeriodicTask):
    """Runs on its own timer and wakes every dependent consumer."""

    def __init__(self, name: str, cycle: Cycle, delay_s: float, notify: Sequence[WakeSignal] = ()):
        super().__init__(name, cycle, delay_s)
        self.notify = list(notify)

    async def run(self):
        logger.info(f"Starting {self.name} (every {self.delay_s:g}s)")
        while True:
            await self.run_once()
            for signal in self.notify:
                signal.send()
            await asyncio.sleep(self.delay_s)


class ConsumerTask(PeriodicTask):
    """Waits for its wake signal or fallback timer, then runs one pass."""

    def __init__(
        self,
        name: str,
        cycle: Cycle,
        delay_s: float,
        wake: Optional[WakeSignal] = None,
        fallback_s: float = 30.0,
    ):
        super().__init__(name, cycle, delay_s)
        self.wake = wake or WakeSignal(name)
        self.fallback_s = fallback_s

    @property
    def idle_s(self) -> float:
        return self.fallback_s + self.delay_s

    async def run(self):
        logger.info(f"Starting {self.name} (min {self.delay_s:g}s, fallback {self.fallback_s:g}s)")
        while True:
            await self.wake.wait(self.fallback_s)
            await self.run_once()
            await asyncio.sleep(self.delay_s)


# ============ Coordinator ============

class TaskCoordinator:
    """
    Runs a fixed set of tasks plus the liveness watchdog.

    The task set is frozen once run() starts.
    """

    def __init__(self, watchdog: Optional[LivenessWatchdog] = None, check_interval_s: float = 10.0):
        self.watchdog = watchdog or LivenessWatchdog()
        self.check_interval_s = check_interval_s
        self.tasks: List[PeriodicTask] = []
        self._running: List[asyncio.Task] = []
        self._stopping = False

    def add(self, task: PeriodicTask) -> PeriodicTask:
        if self._running:
            raise RuntimeError("Cannot add tasks while the coordinator is running")
        if any(t.name == task.name for t in self.tasks):
            raise ValueError(f"Duplicate task name: {task.name}")
        task.watchdog = self.watchdog
        self.tasks.append(task)
        return task

    def get(self, name: str) -> PeriodicTask:
        for task in self.tasks:
            if task.name == name:
                return task
        raise KeyError(name)

    async def _watchdog_loop(self):
        while True:
            await asyncio.sleep(self.check_interval_s)
            self.watchdog.check()
            logger.debug("Watchdog: all tasks alive")

    async def run(self):
        """Run until stopped; raises LivenessFault if a task stalls."""
        self._stopping = False
        for task in self.tasks:
            self.watchdog.register(task.name, task.idle_s)

        self._running = [asyncio.create_task(t.run(), name=t.name) for t in self.tasks]
        self._running.append(asyncio.create_task(self._watchdog_loop(), name="watchdog"))

        try:
            await asyncio.gather(*self._running)
        except asyncio.CancelledError:
            # stop() ends run() normally, any other cancellation propagates
            if not self._stopping:
                raise
        finally:
            await self.stop()

    async def stop(self):
        """Cancel every running task."""
        self._stopping = True
        running, self._running = self._running, []
        for task in running:
            task.cancel()
        for task in running:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except LivenessFault:
                pass
