"""
BlinkMore Engine -- Fade Scheduler
===================================
Consumer side of the isEyeOpen signal.

  True  -> arm a fade after blink_threshold_seconds; apply it only if
           the signal is still True when the delay expires
  False -> cancel any pending fade and remove an active fade now
  A fade held for timeout_s is removed and on_timeout() is called
  (the launcher uses it to switch eye tracking off)
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional


_log = logging.getLogger("BlinkFade")


class FadeSink(ABC):
    """Renderer for the visual fade."""

    @abstractmethod
    def apply_fade(self, speed: float) -> None:
        raise NotImplementedError

    @abstractmethod
    def remove_fade(self, duration: float) -> None:
        raise NotImplementedError


class LoggingFadeSink(FadeSink):
    """Headless sink: records fades in the log."""

    def __init__(self) -> None:
        self.active = False

    def apply_fade(self, speed: float) -> None:
        self.active = True
        _log.info("Fade applied (speed=%.0f)", speed)

    def remove_fade(self, duration: float) -> None:
        self.active = False
        _log.info("Fade removed (%.2fs)", duration)


class FadeScheduler:
    def __init__(
        self,
        sink: FadeSink,
        blink_threshold_seconds: float = 6.0,
        fade_speed: float = 5.0,
        timeout_s: float = 15.0,
        fade_out_s: float = 0.05,
        on_timeout: Optional[Callable[[], None]] = None,
    ) -> None:
        self._sink = sink
        self.blink_threshold_seconds = blink_threshold_seconds
        self.fade_speed = fade_speed
        self.timeout_s = timeout_s
        self.fade_out_s = fade_out_s
        self._on_timeout = on_timeout

        self._lock = threading.Lock()
        self._eye_open = False
        self._faded = False
        self._fade_timer: Optional[threading.Timer] = None
        self._timeout_timer: Optional[threading.Timer] = None
        self._generation = 0
        self.fades_applied = 0

    @property
    def is_faded(self) -> bool:
        return self._faded

    def apply_preferences(self, snapshot) -> None:
        """Take blink threshold and fade speed from a PreferencesSnapshot."""
        self.blink_threshold_seconds = snapshot.blink_threshold_seconds
        self.fade_speed = snapshot.fade_speed

    def on_eye_open(self, eye_open: bool) -> None:
        """Subscriber callback for the isEyeOpen channel."""
        if eye_open:
            self._arm()
        else:
            self.reset()

    def reset(self) -> None:
        """Cancel pending work and remove any fade immediately."""
        with self._lock:
            self._eye_open = False
            self._generation += 1
            self._cancel_timers_locked()
            was_faded = self._faded
            self._faded = False
        if was_faded:
            self._sink.remove_fade(self.fade_out_s)

    def close(self) -> None:
        self.reset()

    # ── Internals ────────────────────────────────────────────

    def _arm(self) -> None:
        with self._lock:
            if self._eye_open:
                return
            self._eye_open = True
            self._generation += 1
            gen = self._generation
            self._cancel_timers_locked()
            self._fade_timer = self._timer(self.blink_threshold_seconds, self._fire_fade, gen)

    def _fire_fade(self, gen: int) -> None:
        with self._lock:
            if gen != self._generation or not self._eye_open or self._faded:
                return
            self._faded = True
            self._fade_timer = None
            self.fades_applied += 1
            self._timeout_timer = self._timer(self.timeout_s, self._fire_timeout, gen)
            speed = self.fade_speed
        self._sink.apply_fade(speed)

    def _fire_timeout(self, gen: int) -> None:
        with self._lock:
            if gen != self._generation or not self._faded:
                return
            self._timeout_timer = None
        _log.warning("Fade held for %.0fs -- removing and disabling eye tracking", self.timeout_s)
        self.reset()
        if self._on_timeout is not None:
            self._on_timeout()

    def _timer(self, delay: float, fn, gen: int) -> threading.Timer:
        t = threading.Timer(delay, fn, args=(gen,))
        t.daemon = True
        t.start()
        return t

    def _cancel_timers_locked(self) -> None:
        for t in (self._fade_timer, self._timeout_timer):
            if t is not None:
                t.cancel()
        self._fade_timer = None
        self._timeout_timer = None
