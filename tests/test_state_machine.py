"""
BlinkMore Engine -- BlinkStateMachine Tests
============================================
"""

import sys
from pathlib import Path

import pytest

_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from blink_state import BlinkStateMachine, InvalidTransition
from blink_types import PauseReason, TrackingPhase, TrackingState


def _running() -> BlinkStateMachine:
    sm = BlinkStateMachine()
    sm.begin_start()
    sm.confirm_running()
    return sm


def test_start_sequence_begins_closed():
    sm = BlinkStateMachine()
    assert sm.state == TrackingState.inactive()
    assert sm.is_active is False
    sm.begin_start()
    assert sm.phase is TrackingPhase.STARTING
    assert sm.is_active is False
    sm.confirm_running()
    assert sm.state == TrackingState.active(False)
    assert sm.is_active is True
    assert sm.is_eye_open is False


def test_verdict_change_flips_and_duplicates_are_noops():
    sm = _running()
    seen = []
    sm.add_listener(lambda old, new: seen.append(new))
    assert sm.on_observation(True) is True
    assert sm.on_observation(True) is False
    assert sm.on_observation(False) is True
    assert sm.on_observation(False) is False
    assert seen == [TrackingState.active(True), TrackingState.active(False)]


def test_negative_pauses_then_resumes_closed():
    sm = _running()
    sm.on_observation(True)
    assert sm.on_negative(PauseReason.NO_FACE) is True
    assert sm.phase is TrackingPhase.PAUSED
    assert sm.pause_reason is PauseReason.NO_FACE
    assert sm.is_eye_open is False
    assert sm.is_active is True
    # A usable frame with an "open" verdict still resumes closed
    sm.on_observation(True)
    assert sm.state == TrackingState.active(False)


def test_paused_from_active_false_then_active_false():
    sm = _running()
    sm.on_negative(PauseReason.MULTIPLE_FACES)
    assert sm.state == TrackingState.paused(PauseReason.MULTIPLE_FACES)
    sm.on_observation(False)
    assert sm.state == TrackingState.active(False)


def test_repeated_negative_same_reason_is_noop():
    sm = _running()
    assert sm.on_negative(PauseReason.NO_FACE) is True
    assert sm.on_negative(PauseReason.NO_FACE) is False
    assert sm.on_negative(PauseReason.LOW_CONFIDENCE) is True
    assert sm.pause_reason is PauseReason.LOW_CONFIDENCE


def test_observations_ignored_outside_active_and_paused():
    sm = BlinkStateMachine()
    assert sm.on_observation(True) is False
    assert sm.on_negative(PauseReason.NO_FACE) is False
    sm.begin_start()
    assert sm.on_observation(True) is False
    assert sm.phase is TrackingPhase.STARTING


def test_stop_sequence():
    sm = _running()
    sm.on_negative(PauseReason.NO_FACE)
    sm.begin_stop()
    assert sm.phase is TrackingPhase.STOPPING
    assert sm.is_active is False
    assert sm.on_observation(True) is False
    sm.finish_stop()
    assert sm.state == TrackingState.inactive()


def test_fail_start_returns_to_inactive():
    sm = BlinkStateMachine()
    sm.begin_start()
    sm.fail_start()
    assert sm.phase is TrackingPhase.INACTIVE


@pytest.mark.parametrize("method", ["confirm_running", "begin_stop", "finish_stop", "fail_start"])
def test_illegal_lifecycle_moves_raise(method):
    sm = BlinkStateMachine()
    with pytest.raises(InvalidTransition):
        getattr(sm, method)()


def test_double_start_raises():
    sm = _running()
    with pytest.raises(InvalidTransition):
        sm.begin_start()


def test_listener_sees_transitions_in_order():
    sm = BlinkStateMachine()
    log = []
    sm.add_listener(lambda old, new: log.append((old.phase, new.phase)))
    sm.begin_start()
    sm.confirm_running()
    sm.on_negative(PauseReason.NO_FACE)
    sm.begin_stop()
    sm.finish_stop()
    assert log == [
        (TrackingPhase.INACTIVE, TrackingPhase.STARTING),
        (TrackingPhase.STARTING, TrackingPhase.ACTIVE),
        (TrackingPhase.ACTIVE, TrackingPhase.PAUSED),
        (TrackingPhase.PAUSED, TrackingPhase.STOPPING),
        (TrackingPhase.STOPPING, TrackingPhase.INACTIVE),
    ]


def test_failing_listener_does_not_block_transition():
    sm = BlinkStateMachine()

    def bad(old, new):
        raise RuntimeError("consumer bug")

    sm.add_listener(bad)
    sm.begin_start()
    assert sm.phase is TrackingPhase.STARTING
