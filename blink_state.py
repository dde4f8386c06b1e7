"""
BlinkMore Engine -- Tracking State Machine
===========================================
The authoritative tracking state and the public isEyeOpen signal.

Transitions:
  Inactive  -> Starting            begin_start()
  Starting  -> Active(False)       confirm_running()
  Starting  -> Inactive            fail_start()
  Active(x) -> Active(!x)          on_observation(!x)   (duplicates ignored)
  Active    -> Paused(reason)      on_negative(reason)
  Paused    -> Active(False)       on_observation(_)    (always closed)
  Active | Paused | Starting -> Stopping -> Inactive   begin_stop() / finish_stop()

Paused is visible to consumers only as is_eye_open == False.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from blink_types import PauseReason, TrackingPhase, TrackingState


_log = logging.getLogger("BlinkState")

TransitionListener = Callable[[TrackingState, TrackingState], None]


class InvalidTransition(ValueError):
    """Lifecycle move that the current state does not allow."""


class BlinkStateMachine:
    """Single-lock state machine.

    Lifecycle methods raise InvalidTransition on illegal moves.
    Per-frame methods (on_observation / on_negative) are ignored
    outside Active and Paused. Listeners run under the lock, in
    transition order, so they must be quick and must not call back
    into the machine.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._state = TrackingState.inactive()
        self._listeners: list[TransitionListener] = []
        self.transitions = 0

    # ── Observers ─────────────────────────────────────────────

    @property
    def state(self) -> TrackingState:
        return self._state

    @property
    def phase(self) -> TrackingPhase:
        return self._state.phase

    @property
    def is_eye_open(self) -> bool:
        s = self._state
        return s.phase is TrackingPhase.ACTIVE and s.eye_open

    @property
    def is_active(self) -> bool:
        return self._state.phase in (TrackingPhase.ACTIVE, TrackingPhase.PAUSED)

    @property
    def pause_reason(self) -> Optional[PauseReason]:
        return self._state.reason

    def add_listener(self, listener: TransitionListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: TransitionListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # ── Lifecycle ─────────────────────────────────────────────

    def begin_start(self) -> None:
        self._lifecycle_move((TrackingPhase.INACTIVE,), TrackingState.starting(), "begin_start")

    def confirm_running(self) -> None:
        self._lifecycle_move((TrackingPhase.STARTING,), TrackingState.active(False), "confirm_running")

    def fail_start(self) -> None:
        self._lifecycle_move((TrackingPhase.STARTING,), TrackingState.inactive(), "fail_start")

    def begin_stop(self) -> None:
        self._lifecycle_move(
            (TrackingPhase.STARTING, TrackingPhase.ACTIVE, TrackingPhase.PAUSED),
            TrackingState.stopping(), "begin_stop",
        )

    def finish_stop(self) -> None:
        self._lifecycle_move((TrackingPhase.STOPPING,), TrackingState.inactive(), "finish_stop")

    # ── Per-frame input ───────────────────────────────────────

    def on_observation(self, eye_open: bool) -> bool:
        """Apply a smoothed verdict from a fully usable frame.

        Returns True if the state changed.
        """
        with self._lock:
            phase = self._state.phase
            if phase is TrackingPhase.PAUSED:
                # Resume closed regardless of the verdict
                return self._set(TrackingState.active(False))
            if phase is not TrackingPhase.ACTIVE:
                return False
            if self._state.eye_open == bool(eye_open):
                return False
            return self._set(TrackingState.active(bool(eye_open)))

    def on_negative(self, reason: PauseReason) -> bool:
        """Apply a negative detection outcome. Returns True if the state changed."""
        with self._lock:
            phase = self._state.phase
            if phase not in (TrackingPhase.ACTIVE, TrackingPhase.PAUSED):
                return False
            if phase is TrackingPhase.PAUSED and self._state.reason is reason:
                return False
            return self._set(TrackingState.paused(reason))

    # ── Internals ─────────────────────────────────────────────

    def _lifecycle_move(self, allowed, target: TrackingState, name: str) -> None:
        with self._lock:
            if self._state.phase not in allowed:
                raise InvalidTransition(f"{name}() not allowed from {self._state}")
            self._set(target)

    def _set(self, new: TrackingState) -> bool:
        old = self._state
        if new == old:
            return False
        self._state = new
        self.transitions += 1
        _log.debug("State %s -> %s", old, new)
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception:
                _log.exception("State listener failed on %s -> %s", old, new)
        return True
