"""
BlinkMore Engine -- Lifecycle Controller
=========================================
Serializes start / stop / terminate so that camera teardown, channel
shutdown and buffer release never race each other.

One enum guarded by one Condition replaces the "is cleaning up" /
"is stopping" flag pairs:

  IDLE -> STARTING -> RUNNING -> STOPPING -> IDLE
            |
            +-- stop() during start --> STARTING_STOP_REQUESTED
                (stop runs as soon as start returns)
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable, Optional


_log = logging.getLogger("BlinkLifecycle")


class LifecyclePhase(Enum):
    IDLE = "idle"
    STARTING = "starting"
    STARTING_STOP_REQUESTED = "starting_stop_requested"
    RUNNING = "running"
    STOPPING = "stopping"


class LifecycleController:
    """Runs the injected start/stop hooks, never two at once.

    Hooks are called without the lock held, on the thread that asked
    for the operation. A failing start hook leaves the controller IDLE
    and its exception propagates to the caller of start().
    """

    def __init__(self, on_start: Callable[[], None], on_stop: Callable[[], None]) -> None:
        self._on_start = on_start
        self._on_stop = on_stop
        self._cond = threading.Condition(threading.Lock())
        self._phase = LifecyclePhase.IDLE
        self.start_count = 0
        self.stop_count = 0

    @property
    def phase(self) -> LifecyclePhase:
        return self._phase

    @property
    def is_running(self) -> bool:
        return self._phase is LifecyclePhase.RUNNING

    @property
    def is_idle(self) -> bool:
        return self._phase is LifecyclePhase.IDLE

    def start(self) -> bool:
        """Run the start hook. Returns False if already starting or running."""
        with self._cond:
            while self._phase is LifecyclePhase.STOPPING:
                self._cond.wait()
            if self._phase is not LifecyclePhase.IDLE:
                return False
            self._phase = LifecyclePhase.STARTING

        try:
            self._on_start()
        except BaseException:
            with self._cond:
                self._phase = LifecyclePhase.IDLE
                self._cond.notify_all()
            raise

        with self._cond:
            deferred_stop = self._phase is LifecyclePhase.STARTING_STOP_REQUESTED
            self._phase = LifecyclePhase.RUNNING
            self.start_count += 1
            self._cond.notify_all()

        if deferred_stop:
            _log.info("Stop was requested during start -- stopping now")
            self.stop()
        return True

    def stop(self) -> bool:
        """Stop if running; defer if a start is in flight.

        Returns False when there is nothing to do (idle, already
        stopping, or a stop is already queued).
        """
        with self._cond:
            if self._phase is LifecyclePhase.STARTING:
                self._phase = LifecyclePhase.STARTING_STOP_REQUESTED
                return True
            if self._phase is not LifecyclePhase.RUNNING:
                return False
            self._phase = LifecyclePhase.STOPPING

        try:
            self._on_stop()
        except Exception:
            _log.exception("Stop hook failed -- forcing idle")
        finally:
            with self._cond:
                self._phase = LifecyclePhase.IDLE
                self.stop_count += 1
                self._cond.notify_all()
        return True

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until IDLE. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: self._phase is LifecyclePhase.IDLE, timeout)

    def terminate(self, timeout: Optional[float] = None) -> bool:
        """Synchronous shutdown: stop (or queue a stop) and wait for IDLE."""
        self.stop()
        return self.wait_idle(timeout)
