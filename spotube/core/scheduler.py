"""Periodic background jobs with skip-if-running semantics."""

import logging
import threading
from typing import Any, Callable

import schedule

logger = logging.getLogger(__name__)


class PeriodicJob:
    """Run ``func`` every ``interval_seconds`` on a daemon thread.

    Each job owns its own ``schedule.Scheduler``; the thread polls
    ``run_pending()`` and runs the first tick immediately on start. A tick
    that fires while the previous run is still going is skipped, never queued.
    Exceptions from ``func`` are logged and the schedule continues.
    """

    def __init__(self, name: str, interval_seconds: float, func: Callable[[], Any]):
        self.name = name
        self.interval_seconds = interval_seconds
        self._func = func
        self._running = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._scheduler = schedule.Scheduler()
        self._scheduler.every(interval_seconds).seconds.do(self.tick)
        self._poll_seconds = min(1.0, interval_seconds)
        self.runs = 0
        self.skipped = 0

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    def tick(self) -> bool:
        """Run once unless a run is already in progress. Returns whether it ran."""
        if not self._running.acquire(blocking=False):
            self.skipped += 1
            logger.info(f"{self.name} job still running, skipping this tick")
            return False
        try:
            self._func()
            self.runs += 1
        except Exception:
            logger.exception(f"{self.name} job failed")
        finally:
            self._running.release()
        return True

    def _run_scheduler(self) -> None:
        logger.info(f"{self.name} job started (every {self.interval_seconds}s)")
        self.tick()
        while not self._stop.is_set():
            try:
                self._scheduler.run_pending()
            except Exception as e:
                logger.error(f"Error in {self.name} scheduler loop: {e}")
            self._stop.wait(self._poll_seconds)
        logger.info(f"{self.name} job stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            logger.warning(f"{self.name} job already started")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run_scheduler, name=f"spotube-{self.name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 10) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def wait(self, timeout: float | None = None) -> bool:
        """Block until stop() is called. Returns True once stopped."""
        return self._stop.wait(timeout)
