"""
Background Workers

The deadline monitor and the consequence executor each run in their own
daemon thread on a fixed interval. They share nothing in process: every
run opens its own database session, and all coordination between workers
(and between instances) goes through conditional writes.
"""
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ...config import MONITOR_INTERVAL_SEC, EXECUTOR_INTERVAL_SEC
from .deadline_engine import DeadlineMonitor
from .executor import ConsequenceExecutor

logger = logging.getLogger(__name__)


class PeriodicWorker:
    """Runs `task` immediately, then every `interval_sec` until stopped."""

    def __init__(self, name: str, interval_sec: float, task: Callable[[], Any]):
        if interval_sec <= 0:
            raise ValueError(f"Interval must be positive: {interval_sec}")
        self.name = name
        self.interval_sec = interval_sec
        self.task = task
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "PeriodicWorker":
        if self.running:
            raise RuntimeError(f"Worker {self.name} already running")
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"Started worker '{self.name}' (every {self.interval_sec}s)")
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info(f"Stopped worker '{self.name}'")

    def run_once(self) -> Any:
        """One guarded run. A failing run is logged and the loop carries on."""
        try:
            return self.task()
        except Exception:
            logger.exception(f"Worker '{self.name}' run failed")
            return None
        finally:
            self.runs += 1

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.interval_sec)


def monitor_task(session_factory: Callable[[], Session], **monitor_options) -> Callable[[], Dict[str, Any]]:
    """A monitor run with its own session."""
    def run() -> Dict[str, Any]:
        db = session_factory()
        try:
            return DeadlineMonitor(db, **monitor_options).run()
        finally:
            db.close()
    return run


def executor_task(
    session_factory: Callable[[], Session],
    collaborators,
    push_channel=None,
    **executor_options,
) -> Callable[[], Dict[str, Any]]:
    """An executor pass over due records with its own session."""
    def run() -> Dict[str, Any]:
        db = session_factory()
        try:
            executor = ConsequenceExecutor(db, collaborators, push_channel, **executor_options)
            return executor.run_due()
        finally:
            db.close()
    return run


def start_workers(
    session_factory: Callable[[], Session],
    collaborators,
    push_channel=None,
    monitor_interval_sec: float = MONITOR_INTERVAL_SEC,
    executor_interval_sec: float = EXECUTOR_INTERVAL_SEC,
) -> List[PeriodicWorker]:
    """Start the monitor and executor workers."""
    workers = [
        PeriodicWorker(
            "deadline-monitor",
            monitor_interval_sec,
            monitor_task(session_factory),
        ),
        PeriodicWorker(
            "consequence-executor",
            executor_interval_sec,
            executor_task(session_factory, collaborators, push_channel),
        ),
    ]
    for worker in workers:
        worker.start()
    return workers


def stop_workers(workers: List[PeriodicWorker], timeout: Optional[float] = 30) -> None:
    for worker in workers:
        worker.stop(timeout)
