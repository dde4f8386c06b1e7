"""
BlinkMore Engine -- Shared Utility Module
==========================================
Centralized eye-openness logic for the blink-detection engine.

Contains 4 Components:
  A) Configuration loading (config.yaml merged over built-in defaults)
  B) Eye Aspect Ratio from a six-point eyelid contour
  C) EyeOpennessEstimator contract + EAR-based default estimator
  D) TemporalSmoother (fixed-window majority vote)

Also:
  - setup_logger for consistently formatted module loggers
  - Sensitivity levels and discretization of stored sensitivity values

EAR FORMULA (six points p0..p5, corner/upper/upper/corner/lower/lower):
  h1  = |p1 - p5|
  h2  = |p2 - p4|
  w   = |p0 - p3|
  EAR = (h1 + h2) / (2 * w)        w == 0  ->  EAR = 0.0
"""

from __future__ import annotations

import copy
import logging
import math
import os
import threading
from abc import ABC, abstractmethod
from collections import deque
from enum import Enum
from typing import Optional, Sequence

import numpy as np
import yaml

from blink_types import EyeMetric, FaceObservation


# ===================================================================
# Configuration
# ===================================================================

_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
_config_path = os.path.join(_SCRIPT_DIR, "config.yaml")

_BUILTIN_DEFAULTS: dict = {
    "camera": {
        "camera_id": 0,
        "width": 640,
        "height": 480,
        "min_width": 160,
        "min_height": 120,
        "min_mean_brightness": 5.0,
        "max_mean_brightness": 250.0,
    },
    "admission": {"frame_skip": 2, "pool_capacity": 3},
    "governor": {
        "sample_interval_frames": 30,
        "battery_min_skip": 3,
        "max_frame_skip": 8,
        "memory_pressure_percent": 85.0,
        "memory_cooldown_s": 10.0,
        "cpu_overload_percent": 85.0,
        "cache_ttl_s": 0.5,
        "battery_cache_ttl_s": 1.0,
    },
    "detector": {
        "face_detector_model": "models/blaze_face_short_range.tflite",
        "landmarker_model": "models/face_landmarker.task",
        "face_confidence_threshold": 0.7,
        "landmark_confidence_threshold": 0.8,
        "roi_margin": 0.3,
    },
    "landmarks": {
        "left_eye": [362, 385, 387, 263, 373, 380],
        "right_eye": [33, 160, 158, 133, 153, 144],
    },
    "estimator": {"sensitivity": {"high": 0.10, "medium": 0.16, "low": 0.22}},
    "smoother": {"window": 5},
    "publisher": {"coalesce_ms": 75, "queue_size": 16},
    "fade": {"timeout_s": 15.0, "fade_out_s": 0.05},
    "preferences": {
        "sensitivity_threshold": 0.16,
        "blink_threshold_seconds": 6.0,
        "fade_speed": 5.0,
        "eye_tracking_enabled": False,
    },
    "logging": {"level": "INFO", "log_path": "logs/blink_audit.jsonl"},
}


def deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge `override` into a deep copy of `base`."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[str] = None) -> dict:
    """Load config.yaml and merge it over the built-in defaults.

    A missing file yields the defaults unchanged; a malformed file raises.
    """
    target = path or _config_path
    if not os.path.exists(target):
        return copy.deepcopy(_BUILTIN_DEFAULTS)
    with open(target, "r", encoding="utf-8") as f:
        loaded = yaml.safe_load(f) or {}
    return deep_merge(_BUILTIN_DEFAULTS, loaded)


CONFIG = load_config()


# ===================================================================
# Constants (loaded from config.yaml, overridable at runtime)
# ===================================================================

FACE_CONFIDENCE_THRESHOLD     = CONFIG["detector"]["face_confidence_threshold"]
LANDMARK_CONFIDENCE_THRESHOLD = CONFIG["detector"]["landmark_confidence_threshold"]
SMOOTHING_WINDOW              = CONFIG["smoother"]["window"]

LEFT_EYE  = CONFIG["landmarks"]["left_eye"]
RIGHT_EYE = CONFIG["landmarks"]["right_eye"]

MIN_EYE_POINTS = 6


# ===================================================================
# Logging Setup
# ===================================================================

def setup_logger(name: Optional[str], level: int = logging.INFO) -> logging.Logger:
    """Create a configured logger for BlinkMore modules.

    name=None configures the root logger, which every Blink* module
    logger propagates to.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            "[%(asctime)s] %(name)-14s %(levelname)-7s %(message)s",
            datefmt="%H:%M:%S",
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger


_log = logging.getLogger("BlinkUtils")


# ===================================================================
# Sensitivity Levels
# ===================================================================

class Sensitivity(Enum):
    """End-user sensitivity knob. Lower EAR threshold = more sensitive."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def threshold(self) -> float:
        return float(CONFIG["estimator"]["sensitivity"][self.value])


def discretize_sensitivity(value: float) -> float:
    """Snap an arbitrary sensitivity threshold to one of the three levels.

    Uses half-step boundaries between the high (smallest) and low
    (largest) thresholds, so 0.12 -> high, 0.17 -> medium, 0.20 -> low.
    """
    lo = Sensitivity.HIGH.threshold
    hi = Sensitivity.LOW.threshold
    step = (hi - lo) / 2.0
    relative = value - lo

    if relative < step * 0.5:
        return lo
    if relative < step * 1.5:
        return Sensitivity.MEDIUM.threshold
    return hi


# ===================================================================
# COMPONENT B: EYE ASPECT RATIO
# ===================================================================

def _distance(a, b) -> float:
    return math.hypot(float(a[0]) - float(b[0]), float(a[1]) - float(b[1]))


def compute_ear(points: Sequence) -> float:
    """Compute Eye Aspect Ratio from a six-point eyelid contour.

    Args:
        points: At least 6 (x, y) points ordered
                [corner, upper1, upper2, corner, lower2, lower1].
                Arrays, tuples, or objects with .x/.y are accepted.

    Returns:
        EAR value. 0.0 when the contour is too short or its width is 0.
    """
    if points is None or len(points) < MIN_EYE_POINTS:
        return 0.0

    pts = []
    for p in points[:MIN_EYE_POINTS]:
        if hasattr(p, "x") and hasattr(p, "y"):
            pts.append((float(p.x), float(p.y)))
        else:
            pts.append((float(p[0]), float(p[1])))

    h1 = _distance(pts[1], pts[5])
    h2 = _distance(pts[2], pts[4])
    w = _distance(pts[0], pts[3])

    if not w > 0.0:
        return 0.0

    ear = (h1 + h2) / (2.0 * w)
    if not math.isfinite(ear):
        return 0.0
    return ear


def contour_width(points: Sequence) -> float:
    """Corner-to-corner width of an eye contour (0.0 if unusable)."""
    if points is None or len(points) < MIN_EYE_POINTS:
        return 0.0
    p0, p3 = points[0], points[3]
    if hasattr(p0, "x"):
        return math.hypot(p0.x - p3.x, p0.y - p3.y)
    return _distance(p0, p3)


# ===================================================================
# COMPONENT C: EYE OPENNESS ESTIMATOR
# ===================================================================

class EyeOpennessEstimator(ABC):
    """Turns one FaceObservation into an EyeMetric.

    Implementations must be swappable: a learned classifier only has to
    produce the same EyeMetric (scores, combined score, open verdict,
    confidence). The sensitivity threshold is hot-swappable from any
    thread.
    """

    def __init__(self, threshold: float) -> None:
        self._threshold = float(threshold)

    @property
    def threshold(self) -> float:
        return self._threshold

    @threshold.setter
    def threshold(self, value: float) -> None:
        _log.info("Sensitivity threshold changed %.3f -> %.3f", self._threshold, value)
        self._threshold = float(value)

    @abstractmethod
    def estimate(self, observation: FaceObservation) -> EyeMetric:
        raise NotImplementedError


class EarEstimator(EyeOpennessEstimator):
    """Geometric estimator: mean EAR of the usable eyes vs. threshold.

    An eye is usable when its contour has 6+ points and non-zero width.
    With one usable eye its EAR is the combined score; with none the
    combined score is 0.0 (closed) and confidence is 0.0.
    """

    def estimate(self, observation: FaceObservation) -> EyeMetric:
        left = self._eye_score(observation.left_eye)
        right = self._eye_score(observation.right_eye)

        usable = [s for s in (left, right) if s is not None]
        combined = float(np.mean(usable)) if usable else 0.0
        threshold = self._threshold

        return EyeMetric(
            left=left,
            right=right,
            combined=combined,
            is_open=combined > threshold,
            confidence=len(usable) / 2.0,
            timestamp=observation.timestamp,
        )

    @staticmethod
    def _eye_score(points) -> Optional[float]:
        if points is None or len(points) < MIN_EYE_POINTS:
            return None
        if contour_width(points) <= 0.0:
            return None
        return compute_ear(points)


# ===================================================================
# COMPONENT D: TEMPORAL SMOOTHER
# ===================================================================

class TemporalSmoother:
    """Fixed-capacity FIFO of recent verdicts with majority voting.

    Until the window is full the raw verdict is returned unchanged.
    Once full: average(window) > 0.5 -> open. Exactly 0.5 is closed.

    Verdicts may be booleans or scalars in [0, 1].
    """

    def __init__(self, window: int = SMOOTHING_WINDOW) -> None:
        if window < 1:
            raise ValueError("Smoothing window must be >= 1.")
        self._window: deque[float] = deque(maxlen=window)
        self._lock = threading.Lock()
        self._verdict = False

    @property
    def capacity(self) -> int:
        return self._window.maxlen

    @property
    def verdict(self) -> bool:
        return self._verdict

    def __len__(self) -> int:
        return len(self._window)

    def update(self, value) -> bool:
        """Push one verdict and return the smoothed verdict."""
        score = min(1.0, max(0.0, float(value)))
        with self._lock:
            self._window.append(score)
            if len(self._window) < self._window.maxlen:
                self._verdict = score > 0.5
            else:
                self._verdict = (sum(self._window) / len(self._window)) > 0.5
            return self._verdict

    def reset(self) -> None:
        with self._lock:
            self._window.clear()
            self._verdict = False
