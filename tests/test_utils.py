"""
BlinkMore Engine -- Utils Test Suite
=====================================
EAR geometry, the EAR estimator, sensitivity levels, the temporal
smoother and config loading.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import numpy as np
import pytest

# Project root
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from blink_types import FaceObservation
from blink_utils_core import (
    EarEstimator,
    Sensitivity,
    TemporalSmoother,
    compute_ear,
    discretize_sensitivity,
    load_config,
    setup_logger,
)


# ── Helpers ───────────────────────────────────────────────────

class _MockLandmark:
    """Simulate MediaPipe landmark with .x, .y attributes."""
    def __init__(self, x: float, y: float):
        self.x = x
        self.y = y


def _make_eye(ear_target: float = 0.3, width: float = 0.1) -> np.ndarray:
    """Six points producing a specific EAR.

    EAR = (v1 + v2) / (2 * w); with v1 = v2 = w * EAR.
    """
    v = width * ear_target
    return np.array([
        [0.0, 0.0],
        [width / 3, -v / 2],
        [2 * width / 3, -v / 2],
        [width, 0.0],
        [2 * width / 3, v / 2],
        [width / 3, v / 2],
    ])


def _observation(left, right) -> FaceObservation:
    return FaceObservation(
        bbox=(0.2, 0.2, 0.4, 0.5), confidence=0.95, landmark_confidence=0.9,
        left_eye=left, right_eye=right, frame_seq=0, timestamp=1.0,
    )


# ── EAR ───────────────────────────────────────────────────────

def test_ear_matches_target():
    assert compute_ear(_make_eye(0.3)) == pytest.approx(0.3)
    assert compute_ear(_make_eye(0.05)) == pytest.approx(0.05)


def test_ear_zero_width_returns_zero():
    """w = 0 must never divide by zero."""
    pts = _make_eye(0.3)
    pts[3] = pts[0]
    assert compute_ear(pts) == 0.0
    assert compute_ear(np.zeros((6, 2))) == 0.0


def test_ear_accepts_landmark_objects():
    lms = [_MockLandmark(x, y) for x, y in _make_eye(0.25)]
    assert compute_ear(lms) == pytest.approx(0.25)


def test_ear_too_few_points():
    assert compute_ear(_make_eye()[:5]) == 0.0
    assert compute_ear(None) == 0.0


def test_ear_non_finite_returns_zero():
    pts = _make_eye(0.3)
    pts[1] = [np.nan, np.nan]
    assert compute_ear(pts) == 0.0


# ── EarEstimator ──────────────────────────────────────────────

def test_estimator_mean_of_both_eyes():
    est = EarEstimator(threshold=0.16)
    m = est.estimate(_observation(_make_eye(0.2), _make_eye(0.3)))
    assert m.combined == pytest.approx(0.25)
    assert m.is_open is True
    assert m.confidence == 1.0


def test_estimator_falls_back_to_single_eye():
    est = EarEstimator(threshold=0.16)
    flat = _make_eye(0.3)
    flat[3] = flat[0]
    m = est.estimate(_observation(flat, _make_eye(0.1)))
    assert m.left is None
    assert m.combined == pytest.approx(0.1)
    assert m.is_open is False
    assert m.confidence == 0.5


def test_estimator_threshold_is_strictly_greater():
    obs = _observation(_make_eye(0.2), _make_eye(0.2))
    est = EarEstimator(threshold=0.0)
    est.threshold = est.estimate(obs).combined
    assert est.estimate(obs).is_open is False


def test_threshold_hot_swap():
    est = EarEstimator(threshold=Sensitivity.LOW.threshold)
    obs = _observation(_make_eye(0.18), _make_eye(0.18))
    assert est.estimate(obs).is_open is False
    est.threshold = Sensitivity.HIGH.threshold
    assert est.estimate(obs).is_open is True


# ── Sensitivity ───────────────────────────────────────────────

def test_sensitivity_levels():
    assert Sensitivity.HIGH.threshold == pytest.approx(0.10)
    assert Sensitivity.MEDIUM.threshold == pytest.approx(0.16)
    assert Sensitivity.LOW.threshold == pytest.approx(0.22)


@pytest.mark.parametrize("value,expected", [
    (0.05, 0.10), (0.12, 0.10), (0.16, 0.16), (0.17, 0.16), (0.20, 0.22), (0.30, 0.22),
])
def test_discretize_sensitivity(value, expected):
    assert discretize_sensitivity(value) == pytest.approx(expected)


# ── TemporalSmoother ──────────────────────────────────────────

def _feed(smoother, values):
    out = None
    for v in values:
        out = smoother.update(v)
    return out


def test_smoother_majority_true():
    assert _feed(TemporalSmoother(5), [1, 1, 1, 0, 0]) is True


def test_smoother_majority_false():
    assert _feed(TemporalSmoother(5), [1, 1, 0, 0, 0]) is False


def test_smoother_partial_window_returns_raw():
    s = TemporalSmoother(5)
    assert s.update(True) is True
    assert s.update(False) is False
    assert s.update(True) is True
    assert len(s) == 3


def test_smoother_exact_half_is_closed():
    assert _feed(TemporalSmoother(4), [1, 1, 0, 0]) is False
    assert _feed(TemporalSmoother(5), [0.5] * 5) is False


def test_smoother_never_exceeds_capacity():
    s = TemporalSmoother(5)
    _feed(s, [1] * 50)
    assert len(s) == 5
    assert s.update(0) is True      # [1,1,1,1,0]


def test_smoother_reset():
    s = TemporalSmoother(5)
    _feed(s, [1] * 5)
    s.reset()
    assert len(s) == 0
    assert s.verdict is False


def test_smoother_rejects_zero_window():
    with pytest.raises(ValueError):
        TemporalSmoother(0)


# ── Config ────────────────────────────────────────────────────

def test_load_config_merges_partial_file(tmp_path):
    path = tmp_path / "partial.yaml"
    path.write_text("smoother:\n  window: 7\ndetector:\n  roi_margin: 0.5\n", encoding="utf-8")
    cfg = load_config(str(path))
    assert cfg["smoother"]["window"] == 7
    assert cfg["detector"]["roi_margin"] == 0.5
    assert cfg["detector"]["face_confidence_threshold"] == 0.7
    assert cfg["governor"]["max_frame_skip"] == 8


def test_load_config_missing_file_gives_defaults(tmp_path):
    cfg = load_config(str(tmp_path / "nope.yaml"))
    assert cfg["landmarks"]["left_eye"] == [362, 385, 387, 263, 373, 380]


# ── Logging ───────────────────────────────────────────────────

def test_setup_logger_configures_root_once():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    root.handlers = []
    try:
        logger = setup_logger(None, logging.DEBUG)
        assert logger is root
        assert logger.level == logging.DEBUG
        setup_logger(None, logging.WARNING)
        assert len(root.handlers) == 1
        assert root.level == logging.WARNING
        fmt = root.handlers[0].formatter._fmt
        assert "%(name)-14s" in fmt
    finally:
        root.handlers = saved_handlers
        root.setLevel(saved_level)
