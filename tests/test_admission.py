"""
BlinkMore Engine -- Frame Admission & Buffer Pool Tests
========================================================
Stride filter, mid-stream stride changes, bounded pool under a
producer that outruns the consumer, and buffer ownership.
"""

from __future__ import annotations

import sys
import threading
from pathlib import Path

import numpy as np
import pytest

_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from blink_admission import BufferPool, FrameAdmission
from blink_types import BufferReleasedError, FrameSample, ThrottleProfile


def _sample(seq: int) -> FrameSample:
    return FrameSample(seq, float(seq), np.zeros((4, 4, 3), dtype=np.uint8))


# ── Stride filter ─────────────────────────────────────────────

def test_frame_skip_three_admits_every_third():
    adm = FrameAdmission(frame_skip=3, pool=BufferPool(capacity=100))
    admitted = [s for s in range(30) if adm.admit(_sample(s))]
    assert admitted == list(range(0, 30, 3))
    assert adm.admitted == 10
    assert adm.skipped == 20


def test_skipped_frames_are_released():
    adm = FrameAdmission(frame_skip=2)
    s = _sample(1)
    assert adm.admit(s) is False
    assert s.released


def test_stride_change_applies_to_next_frame_only():
    adm = FrameAdmission(frame_skip=3, pool=BufferPool(capacity=100))
    admitted = [s for s in range(0, 5) if adm.admit(_sample(s))]   # 0, 3
    adm.apply_profile(ThrottleProfile(frame_skip=2, cache_ttl=0.5, pool_capacity=100))
    admitted += [s for s in range(5, 10) if adm.admit(_sample(s))]  # 6, 8
    assert admitted == [0, 3, 6, 8]
    # Skipped frames are never reconsidered
    assert len(adm.pool) == 4


def test_frame_skip_must_be_positive():
    with pytest.raises(ValueError):
        FrameAdmission(frame_skip=0)
    adm = FrameAdmission(frame_skip=1)
    with pytest.raises(ValueError):
        adm.frame_skip = 0


# ── Buffer pool ───────────────────────────────────────────────

def test_pool_evicts_oldest_and_releases_it():
    pool = BufferPool(capacity=3)
    samples = [_sample(i) for i in range(5)]
    for s in samples:
        pool.put(s)
    assert len(pool) == 3
    assert samples[0].released and samples[1].released
    assert [pool.take(0).seq for _ in range(3)] == [2, 3, 4]
    assert pool.evicted == 2


def test_take_times_out_on_empty_pool():
    assert BufferPool(capacity=2).take(timeout=0.01) is None


def test_shrinking_capacity_trims_oldest():
    pool = BufferPool(capacity=3)
    samples = [_sample(i) for i in range(3)]
    for s in samples:
        pool.put(s)
    pool.capacity = 1
    assert len(pool) == 1
    assert samples[0].released and samples[1].released
    assert not samples[2].released


def test_clear_releases_everything():
    pool = BufferPool(capacity=3)
    samples = [_sample(i) for i in range(3)]
    for s in samples:
        pool.put(s)
    assert pool.clear() == 3
    assert len(pool) == 0
    assert all(s.released for s in samples)


def test_pool_never_exceeds_capacity_under_fast_producer():
    pool = BufferPool(capacity=3)
    max_seen = {"n": 0}
    stop = threading.Event()

    def producer():
        for i in range(5000):
            pool.put(_sample(i))
            max_seen["n"] = max(max_seen["n"], len(pool))
        stop.set()

    def slow_consumer():
        while not stop.is_set():
            s = pool.take(timeout=0.01)
            if s is not None:
                s.release()
                stop.wait(0.001)

    threads = [threading.Thread(target=producer), threading.Thread(target=slow_consumer)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert max_seen["n"] <= 3
    assert len(pool) <= 3
    assert pool.evicted > 0


# ── Buffer ownership ──────────────────────────────────────────

def test_released_buffer_cannot_be_read():
    s = _sample(7)
    assert s.pixels.shape == (4, 4, 3)
    assert s.release() is True
    assert s.release() is False
    with pytest.raises(BufferReleasedError):
        _ = s.pixels
