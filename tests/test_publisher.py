"""
BlinkMore Engine -- SignalChannel Tests
========================================
"""

import queue
import sys
from pathlib import Path

import pytest

_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from blink_publisher import SignalChannel


def test_values_within_window_coalesce_to_last():
    ch = SignalChannel("isEyeOpen", initial=False, coalesce_ms=5000)
    sub = ch.subscribe()
    ch.publish(True)
    ch.publish(False)
    ch.publish(True)
    assert sub.drain() == []
    ch.flush()
    assert sub.drain() == [True]
    assert ch.value is True


def test_timer_flushes_pending_value():
    ch = SignalChannel("isEyeOpen", initial=False, coalesce_ms=20)
    sub = ch.subscribe()
    ch.publish(True)
    assert sub.get(timeout=1.0) is True


def test_immediate_value_bypasses_window_and_cancels_pending():
    ch = SignalChannel("isEyeOpen", initial=True, coalesce_ms=1000, immediate_values=(False,))
    sub = ch.subscribe()
    ch.publish(False)
    assert sub.drain() == [False]
    ch.publish(True)
    ch.publish(False)        # pending True is discarded
    ch.flush()
    assert sub.drain() == []
    assert ch.value is False


def test_duplicate_values_not_reemitted():
    ch = SignalChannel("isActive", initial=False, coalesce_ms=0)
    seen = []
    ch.subscribe(seen.append)
    for v in (True, True, False, False, True):
        ch.publish(v)
    assert seen == [True, False, True]
    assert ch.emit_count == 3


def test_bounded_queue_drops_oldest():
    ch = SignalChannel("n", initial=0, coalesce_ms=0, queue_size=2)
    sub = ch.subscribe()
    for v in (1, 2, 3, 4):
        ch.publish(v)
    assert sub.drain() == [3, 4]
    assert sub.dropped == 2


def test_unsubscribe_and_close():
    ch = SignalChannel("isActive", initial=False, coalesce_ms=0)
    seen = []
    handle = ch.subscribe(seen.append)
    sub = ch.subscribe()
    ch.publish(True)
    ch.unsubscribe(handle)
    sub.cancel()
    ch.publish(False)
    assert seen == [True]
    assert sub.drain() == [True]

    ch.close()
    ch.publish(True)
    assert ch.value is False
    assert ch.closed


def test_failing_callback_does_not_break_others():
    ch = SignalChannel("isActive", initial=False, coalesce_ms=0)
    seen = []

    def bad(_):
        raise RuntimeError("consumer bug")

    ch.subscribe(bad)
    ch.subscribe(seen.append)
    ch.publish(True)
    assert seen == [True]


def test_close_flushes_pending():
    ch = SignalChannel("isEyeOpen", initial=False, coalesce_ms=5000)
    sub = ch.subscribe()
    ch.publish(True)
    ch.close()
    assert sub.get(timeout=0.1) is True
    with pytest.raises(queue.Empty):
        sub.get(timeout=0.01)
