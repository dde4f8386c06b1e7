"""
BlinkMore Engine -- Shared Data Types
======================================
Plain data carriers passed between pipeline stages.

FrameSample    one captured frame (exclusively owned until released)
FaceObservation detected face + eye contours for one frame
EyeMetric      per-frame openness measurement
DetectionOutcome per-frame result of the LandmarkDetector
ThrottleProfile  resource-driven admission / cache policy
TrackingState  engine-wide mode owned by the BlinkStateMachine
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, asdict, field
from enum import Enum
from typing import Optional, Tuple

import numpy as np


class BufferReleasedError(RuntimeError):
    """A FrameSample's pixel buffer was read after release."""


class FrameSample:
    """One captured video frame.

    The pixel buffer belongs to whoever holds the sample until
    release() is called (by the consumer after processing, or by the
    buffer pool on eviction). Any later access raises
    BufferReleasedError.
    """

    __slots__ = ("seq", "timestamp", "_pixels", "_released", "_lock")

    def __init__(self, seq: int, timestamp: float, pixels: np.ndarray) -> None:
        self.seq = seq
        self.timestamp = timestamp
        self._pixels: Optional[np.ndarray] = pixels
        self._released = False
        self._lock = threading.Lock()

    @property
    def pixels(self) -> np.ndarray:
        with self._lock:
            if self._released:
                raise BufferReleasedError(f"frame {self.seq} already released")
            return self._pixels

    @property
    def released(self) -> bool:
        return self._released

    @property
    def shape(self) -> Tuple[int, ...]:
        return self.pixels.shape

    def release(self) -> bool:
        """Drop the pixel buffer. Returns False if already released."""
        with self._lock:
            if self._released:
                return False
            self._released = True
            self._pixels = None
            return True

    def __repr__(self) -> str:
        state = "released" if self._released else "live"
        return f"FrameSample(seq={self.seq}, t={self.timestamp:.3f}, {state})"


@dataclass
class FaceCandidate:
    """Raw face box from a detection backend, in frame pixels."""
    bbox: Tuple[int, int, int, int]   # x, y, w, h
    score: float


@dataclass
class FaceObservation:
    """Detected face in a frame."""
    bbox: Tuple[float, float, float, float]   # normalized x, y, w, h
    confidence: float
    landmark_confidence: float
    left_eye: np.ndarray        # (6, 2) pixel coordinates
    right_eye: np.ndarray
    frame_seq: int
    timestamp: float

    def pixel_bbox(self, frame_w: int, frame_h: int) -> Tuple[int, int, int, int]:
        x, y, w, h = self.bbox
        return (int(x * frame_w), int(y * frame_h),
                int(w * frame_w), int(h * frame_h))


@dataclass
class EyeMetric:
    """Openness measurement for one processed frame."""
    left: Optional[float]
    right: Optional[float]
    combined: float
    is_open: bool
    confidence: float
    timestamp: float

    def to_dict(self) -> dict:
        return asdict(self)


class PauseReason(Enum):
    NO_FACE = "no_face"
    MULTIPLE_FACES = "multiple_faces"
    EYES_NOT_VISIBLE = "eyes_not_visible"
    LOW_CONFIDENCE = "low_confidence"
    DETECTION_ERROR = "detection_error"


@dataclass
class DetectionOutcome:
    """Per-frame LandmarkDetector output."""
    face_detected: bool
    multiple_faces: bool = False
    eyes_visible: bool = False
    observation: Optional[FaceObservation] = None
    reason: Optional[PauseReason] = None
    used_cache: bool = False

    @property
    def usable(self) -> bool:
        return (self.face_detected and not self.multiple_faces
                and self.eyes_visible and self.observation is not None)

    @classmethod
    def negative(cls, reason: PauseReason, face_detected: bool = False,
                 multiple_faces: bool = False) -> "DetectionOutcome":
        return cls(face_detected=face_detected, multiple_faces=multiple_faces,
                   eyes_visible=False, observation=None, reason=reason)


@dataclass(frozen=True)
class ThrottleProfile:
    frame_skip: int
    cache_ttl: float        # seconds
    pool_capacity: int

    def to_dict(self) -> dict:
        return asdict(self)


class TrackingPhase(Enum):
    INACTIVE = "inactive"
    STARTING = "starting"
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPING = "stopping"


@dataclass(frozen=True)
class TrackingState:
    """Engine-wide mode.

    eye_open is meaningful only in ACTIVE; reason only in PAUSED.
    """
    phase: TrackingPhase = TrackingPhase.INACTIVE
    eye_open: bool = False
    reason: Optional[PauseReason] = field(default=None)

    @classmethod
    def inactive(cls) -> "TrackingState":
        return cls(TrackingPhase.INACTIVE)

    @classmethod
    def starting(cls) -> "TrackingState":
        return cls(TrackingPhase.STARTING)

    @classmethod
    def active(cls, eye_open: bool = False) -> "TrackingState":
        return cls(TrackingPhase.ACTIVE, eye_open=eye_open)

    @classmethod
    def paused(cls, reason: PauseReason) -> "TrackingState":
        return cls(TrackingPhase.PAUSED, reason=reason)

    @classmethod
    def stopping(cls) -> "TrackingState":
        return cls(TrackingPhase.STOPPING)

    def __str__(self) -> str:
        if self.phase is TrackingPhase.ACTIVE:
            return f"Active(eyeOpen={self.eye_open})"
        if self.phase is TrackingPhase.PAUSED:
            return f"Paused({self.reason.value if self.reason else '?'})"
        return self.phase.value.capitalize()
