"""
Idle-shutdown supervisor.

The only process-wide mutable state of the worker lives here: whether a job
is in flight and when the worker last became idle. A background timer checks
the idle time on a fixed interval and requests shutdown once the threshold is
exceeded, and never while a job is busy.
"""

import enum
import logging
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)


class WorkerState(str, enum.Enum):
    IDLE = "idle"
    BUSY = "busy"
    SHUTDOWN = "shutdown"


class IdleShutdownSupervisor:
    def __init__(
        self,
        idle_threshold_seconds: float,
        check_interval_seconds: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        on_shutdown: Callable[[], None] | None = None,
    ):
        self._idle_threshold = idle_threshold_seconds
        self._check_interval = check_interval_seconds
        self._clock = clock
        self._on_shutdown = on_shutdown

        self._lock = threading.Lock()
        self._state = WorkerState.IDLE
        self._last_idle_mark = clock()
        self._started_at = clock()
        self._current_job: str | None = None
        self._shutdown_pending = False
        self._shutdown_event = threading.Event()
        self._stop_timer = threading.Event()
        self._timer: threading.Thread | None = None

    # --- observers ---

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def is_busy(self) -> bool:
        return self._state is WorkerState.BUSY

    @property
    def current_job(self) -> str | None:
        return self._current_job

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_event.is_set()

    def uptime_seconds(self) -> float:
        return self._clock() - self._started_at

    def idle_seconds(self) -> float:
        with self._lock:
            if self._state is not WorkerState.IDLE:
                return 0.0
            return self._clock() - self._last_idle_mark

    def wait_for_shutdown(self, timeout: float | None = None) -> bool:
        return self._shutdown_event.wait(timeout)

    # --- transitions ---

    def mark_busy(self, job_id: str | None = None) -> bool:
        """
        Claim the worker for one job. Returns False if shutdown already
        happened, in which case the job must not be started.
        """
        with self._lock:
            if self._state is WorkerState.SHUTDOWN:
                return False
            if self._state is WorkerState.BUSY:
                raise RuntimeError("worker is already busy; jobs are processed one at a time")
            self._state = WorkerState.BUSY
            self._current_job = job_id
        logger.debug("Worker busy", extra={"job_id": job_id})
        return True

    def mark_idle(self) -> None:
        """Release the worker after the job reached a terminal state and re-arm the idle timer."""
        fire = False
        with self._lock:
            if self._state is not WorkerState.BUSY:
                return
            self._state = WorkerState.IDLE
            self._current_job = None
            self._last_idle_mark = self._clock()
            if self._shutdown_pending:
                self._state = WorkerState.SHUTDOWN
                fire = True
        logger.debug("Worker idle")
        if fire:
            self._fire("shutdown requested while busy")

    def request_shutdown(self, reason: str = "requested") -> None:
        """Shut down now if idle, otherwise as soon as the current job finishes."""
        fire = False
        with self._lock:
            if self._state is WorkerState.SHUTDOWN:
                return
            if self._state is WorkerState.BUSY:
                self._shutdown_pending = True
                logger.info("Shutdown deferred until current job finishes", extra={"reason": reason})
            else:
                self._state = WorkerState.SHUTDOWN
                fire = True
        if fire:
            self._fire(reason)

    def tick(self) -> bool:
        """One timer check. Returns True if this tick initiated shutdown."""
        with self._lock:
            if self._state is not WorkerState.IDLE:
                return False
            idle_for = self._clock() - self._last_idle_mark
            if idle_for <= self._idle_threshold:
                return False
            self._state = WorkerState.SHUTDOWN
        self._fire(f"idle for {idle_for:.0f}s")
        return True

    # --- timer thread ---

    def start(self) -> None:
        if self._timer is not None:
            return
        self._timer = threading.Thread(
            target=self._run_timer, name="idle-supervisor", daemon=True
        )
        self._timer.start()

    def stop(self) -> None:
        self._stop_timer.set()
        if self._timer is not None:
            self._timer.join(timeout=self._check_interval)
            self._timer = None

    def _run_timer(self) -> None:
        while not self._stop_timer.wait(self._check_interval):
            if self.tick():
                return

    def _fire(self, reason: str) -> None:
        logger.info("Initiating graceful shutdown", extra={"reason": reason})
        self._shutdown_event.set()
        if self._on_shutdown is not None:
            self._on_shutdown()
