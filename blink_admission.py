"""
BlinkMore Engine -- Frame Admission
====================================
Decides which captured frames reach the detector, and holds admitted
frames in a small bounded pool between the capture thread (producer)
and the processing thread (consumer).

Features:
  - Stride filter: admit iff seq % frame_skip == 0, O(1), never blocks
  - Stride changes apply from the next evaluated frame
  - BufferPool: fixed capacity, oldest-first eviction, evicted frames
    are released immediately
  - One lock, append/evict/pop only inside it
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Optional

from blink_types import FrameSample, ThrottleProfile


_log = logging.getLogger("BlinkAdmission")


class BufferPool:
    """Bounded FIFO of admitted frames shared by two threads."""

    def __init__(self, capacity: int = 3) -> None:
        if capacity < 1:
            raise ValueError("Pool capacity must be >= 1.")
        self._capacity = capacity
        self._items: deque[FrameSample] = deque()
        self._cond = threading.Condition(threading.Lock())
        self.evicted = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @capacity.setter
    def capacity(self, value: int) -> None:
        if value < 1:
            raise ValueError("Pool capacity must be >= 1.")
        with self._cond:
            self._capacity = value
            dropped = self._trim_locked()
        for sample in dropped:
            sample.release()

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    def put(self, sample: FrameSample) -> None:
        """Insert without blocking. Past capacity the oldest frame goes."""
        with self._cond:
            self._items.append(sample)
            dropped = self._trim_locked()
            self._cond.notify()
        for old in dropped:
            old.release()

    def take(self, timeout: Optional[float] = None) -> Optional[FrameSample]:
        """Pop the oldest frame, waiting up to `timeout` seconds."""
        with self._cond:
            if not self._items:
                self._cond.wait(timeout)
            if not self._items:
                return None
            return self._items.popleft()

    def wake(self) -> None:
        """Wake a consumer blocked in take()."""
        with self._cond:
            self._cond.notify_all()

    def clear(self) -> int:
        with self._cond:
            dropped = list(self._items)
            self._items.clear()
            self._cond.notify_all()
        for sample in dropped:
            sample.release()
        return len(dropped)

    def _trim_locked(self) -> list:
        dropped = []
        while len(self._items) > self._capacity:
            dropped.append(self._items.popleft())
            self.evicted += 1
        return dropped


class FrameAdmission:
    """Stride filter in front of the BufferPool.

    admit() runs on the capture thread. Rejected frames are released at
    once; admitted frames move into the pool.
    """

    def __init__(self, frame_skip: int = 1, pool: Optional[BufferPool] = None) -> None:
        if frame_skip < 1:
            raise ValueError("frame_skip must be >= 1.")
        self._frame_skip = frame_skip
        self.pool = pool or BufferPool()
        self.admitted = 0
        self.skipped = 0

    @property
    def frame_skip(self) -> int:
        return self._frame_skip

    @frame_skip.setter
    def frame_skip(self, value: int) -> None:
        if value < 1:
            raise ValueError("frame_skip must be >= 1.")
        # Single int rebind; the capture thread sees it on its next frame
        self._frame_skip = value

    def should_admit(self, seq: int) -> bool:
        return seq % self._frame_skip == 0

    def admit(self, sample: FrameSample) -> bool:
        if not self.should_admit(sample.seq):
            self.skipped += 1
            sample.release()
            return False
        self.admitted += 1
        self.pool.put(sample)
        return True

    def apply_profile(self, profile: ThrottleProfile) -> None:
        if profile.frame_skip != self._frame_skip:
            _log.info("Frame skip %d -> %d", self._frame_skip, profile.frame_skip)
        self.frame_skip = profile.frame_skip
        if profile.pool_capacity != self.pool.capacity:
            _log.info("Buffer pool capacity %d -> %d",
                      self.pool.capacity, profile.pool_capacity)
            self.pool.capacity = profile.pool_capacity

    def get_stats(self) -> dict:
        return {
            "frame_skip": self._frame_skip,
            "admitted": self.admitted,
            "skipped": self.skipped,
            "pool_size": len(self.pool),
            "pool_capacity": self.pool.capacity,
            "evicted": self.pool.evicted,
        }
