"""
coinsim Runner: Periodic Task Scheduler

Runs a callable on a fixed interval in its own thread.

- Runs never overlap: the next run starts only after the previous one returns
- Each task has its own stop event, passed to the callable as its cancel token
- A failed run is logged with traceback and the schedule continues
"""

import logging
import random
import time
from threading import Event, Thread
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Usage:
        task = PeriodicTask("monitor", desk.monitor_cycle, interval_seconds=30)
        task.start()
        ...
        task.stop()
    """

    def __init__(self, name: str, func: Callable[[Event], object], interval_seconds: float,
                 jitter_pct: float = 0.0, run_immediately: bool = True):
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        self.name = name
        self.func = func
        self.interval_seconds = float(interval_seconds)
        self.jitter_pct = max(0.0, min(float(jitter_pct), 20.0))
        self.run_immediately = run_immediately
        self.stop_event = Event()
        self.runs = 0
        self.failures = 0
        self._thread: Optional[Thread] = None

    def run_once(self) -> bool:
        """Execute one run. Returns False if it raised."""
        start = time.monotonic()
        try:
            self.func(self.stop_event)
        except Exception as e:
            self.failures += 1
            logger.error(f"Task {self.name} failed: {e}", exc_info=True)
            return False
        finally:
            self.runs += 1
        logger.debug(f"Task {self.name} finished in {time.monotonic() - start:.2f}s")
        return True

    def _next_sleep(self, elapsed: float) -> float:
        jitter = random.uniform(0, self.jitter_pct / 100.0) * self.interval_seconds
        return max(0.0, self.interval_seconds - elapsed + jitter)

    def _loop(self) -> None:
        logger.info(f"Task {self.name} started (interval={self.interval_seconds:g}s)")
        if not self.run_immediately and self.stop_event.wait(self.interval_seconds):
            return
        while not self.stop_event.is_set():
            start = time.monotonic()
            self.run_once()
            elapsed = time.monotonic() - start
            if elapsed > self.interval_seconds:
                logger.warning(
                    f"Task {self.name} overran its interval ({elapsed:.2f}s > {self.interval_seconds:g}s)"
                )
            if self.stop_event.wait(self._next_sleep(elapsed)):
                break
        logger.info(f"Task {self.name} stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self.stop_event.clear()
        self._thread = Thread(target=self._loop, name=f"task-{self.name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self.stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
