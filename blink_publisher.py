"""
BlinkMore Engine -- Signal Publisher
=====================================
Consumer-notification context for the engine's public signals.

One SignalChannel per signal (isEyeOpen, isActive):
  - single producer: only the state machine listener calls publish()
  - timer-gated coalescing: values arriving within the window collapse
    to the last one; a value equal to the last emitted one is dropped
  - values marked "immediate" bypass the window (isEyeOpen=False must
    reach the fade consumer at once)
  - subscribers get either a callback or a bounded queue that drops
    its oldest entry when full
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, Iterable, Optional


_log = logging.getLogger("BlinkPublisher")


class Subscription:
    """Bounded-queue subscriber handle."""

    def __init__(self, channel: "SignalChannel", maxsize: int) -> None:
        self._channel = channel
        self.queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def _deliver(self, value: Any) -> None:
        try:
            self.queue.put_nowait(value)
        except queue.Full:
            try:
                self.queue.get_nowait()
                self.dropped += 1
            except queue.Empty:
                pass
            self.queue.put_nowait(value)

    def get(self, timeout: Optional[float] = None) -> Any:
        """Next value; raises queue.Empty on timeout."""
        return self.queue.get(timeout=timeout)

    def drain(self) -> list:
        items = []
        while True:
            try:
                items.append(self.queue.get_nowait())
            except queue.Empty:
                return items

    def cancel(self) -> None:
        self._channel.unsubscribe(self)


class SignalChannel:
    """Debounced single-writer / multi-reader value channel."""

    def __init__(
        self,
        name: str,
        initial: Any = None,
        coalesce_ms: float = 75.0,
        immediate_values: Iterable[Any] = (),
        queue_size: int = 16,
    ) -> None:
        self.name = name
        self._coalesce_s = max(0.0, coalesce_ms / 1000.0)
        self._immediate = tuple(immediate_values)
        self._queue_size = queue_size

        self._lock = threading.Lock()
        # Held across decide + fan-out so emissions reach subscribers in order
        self._emit_lock = threading.RLock()
        self._emitted = initial
        self._pending: Any = None
        self._has_pending = False
        self._timer: Optional[threading.Timer] = None
        self._callbacks: list[Callable[[Any], None]] = []
        self._subscriptions: list[Subscription] = []
        self._closed = False
        self.emit_count = 0

    @property
    def value(self) -> Any:
        """Last emitted value."""
        return self._emitted

    @property
    def closed(self) -> bool:
        return self._closed

    # ── Subscription ─────────────────────────────────────────

    def subscribe(self, callback: Optional[Callable[[Any], None]] = None):
        """Register a callback, or return a queue Subscription when none given."""
        with self._lock:
            if callback is not None:
                self._callbacks.append(callback)
                return callback
            sub = Subscription(self, self._queue_size)
            self._subscriptions.append(sub)
            return sub

    def unsubscribe(self, handle) -> None:
        with self._lock:
            if handle in self._callbacks:
                self._callbacks.remove(handle)
            if handle in self._subscriptions:
                self._subscriptions.remove(handle)

    # ── Producer side ────────────────────────────────────────

    def publish(self, value: Any) -> None:
        if value in self._immediate or self._coalesce_s == 0.0:
            with self._emit_lock:
                with self._lock:
                    if self._closed:
                        return
                    self._cancel_timer_locked()
                    self._has_pending = False
                    self._pending = None
                    emit = self._take_emit_locked(value)
                if emit:
                    self._fan_out(value)
            return

        with self._lock:
            if self._closed:
                return
            self._pending = value
            self._has_pending = True
            if self._timer is None:
                self._timer = threading.Timer(self._coalesce_s, self._flush)
                self._timer.daemon = True
                self._timer.name = f"Signal-{self.name}"
                self._timer.start()

    def flush(self) -> None:
        """Emit any pending value now."""
        with self._lock:
            self._cancel_timer_locked()
        self._flush()

    def close(self) -> None:
        """Flush pending value and stop accepting new ones."""
        self.flush()
        with self._lock:
            self._closed = True

    # ── Internals ────────────────────────────────────────────

    def _flush(self) -> None:
        with self._emit_lock:
            with self._lock:
                self._timer = None
                if not self._has_pending:
                    return
                value = self._pending
                self._has_pending = False
                self._pending = None
                emit = self._take_emit_locked(value)
            if emit:
                self._fan_out(value)

    def _take_emit_locked(self, value: Any) -> bool:
        if value == self._emitted:
            return False
        self._emitted = value
        self.emit_count += 1
        return True

    def _cancel_timer_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fan_out(self, value: Any) -> None:
        with self._lock:
            callbacks = list(self._callbacks)
            subs = list(self._subscriptions)
        _log.debug("%s -> %r", self.name, value)
        for sub in subs:
            sub._deliver(value)
        for cb in callbacks:
            try:
                cb(value)
            except Exception:
                _log.exception("Subscriber of %s failed", self.name)
