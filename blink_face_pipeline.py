"""
BlinkMore Engine -- Face Detection & Landmark Pipeline
=======================================================
Two-tier face analysis for admitted frames.

Features:
  - Full pass: full-frame face search, then landmarks on the face ROI
  - Cached pass: landmarks only, on the ROI of the last good face,
    while the cache is younger than cacheTTL and its face confidence
    met the face threshold
  - Cache invalidated on detection error, zero faces, several faces,
    or confidence regression
  - Landmark confidence thresholded separately before eyes count as usable
  - Backend contract (FaceBackend) so detectors can be swapped or
    scripted in tests; MediaPipe Tasks backend by default

Runs only on the processing thread.
"""

from __future__ import annotations

import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional, Sequence

import cv2
import numpy as np

from blink_types import (
    DetectionOutcome,
    FaceCandidate,
    FaceObservation,
    PauseReason,
    ThrottleProfile,
)
from blink_utils_core import (
    FACE_CONFIDENCE_THRESHOLD,
    LANDMARK_CONFIDENCE_THRESHOLD,
    LEFT_EYE,
    MIN_EYE_POINTS,
    RIGHT_EYE,
)


# ─── Module Logger ─────────────────────────────────────────────
_log = logging.getLogger("BlinkFacePipeline")

_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))

BBox = tuple[int, int, int, int]


# ═══════════════════════════════════════════════════════════════
# Backend contract
# ═══════════════════════════════════════════════════════════════

class FaceBackend(ABC):
    """Low-level detector used by LandmarkDetector.

    Both methods take a BGR uint8 frame and work in frame pixels.
    They may raise; the LandmarkDetector turns any exception into a
    DETECTION_ERROR outcome.
    """

    @abstractmethod
    def find_faces(self, frame: np.ndarray) -> list[FaceCandidate]:
        """Full-frame face search."""

    @abstractmethod
    def extract_landmarks(self, frame: np.ndarray, roi: BBox) -> Optional[np.ndarray]:
        """Dense (N, 2) landmarks for the single face inside `roi`, or None."""

    def close(self) -> None:
        pass


class MediaPipeFaceBackend(FaceBackend):
    """MediaPipe Tasks: FaceDetector for boxes, FaceLandmarker for the mesh.

    FaceDetector (BlazeFace short range) gives per-face scores for the
    face-count and confidence checks. FaceLandmarker runs in IMAGE mode
    with num_faces=1 on an ROI crop, so the cached pass never needs the
    full-frame detector.
    """

    def __init__(
        self,
        face_detector_model: str = "models/blaze_face_short_range.tflite",
        landmarker_model: str = "models/face_landmarker.task",
        min_detection_confidence: float = 0.5,
    ) -> None:
        from mediapipe.tasks import python
        from mediapipe.tasks.python import vision

        detector_path = self._resolve(face_detector_model)
        landmarker_path = self._resolve(landmarker_model)

        self._detector = vision.FaceDetector.create_from_options(
            vision.FaceDetectorOptions(
                base_options=python.BaseOptions(
                    model_asset_path=detector_path,
                    delegate=python.BaseOptions.Delegate.CPU,
                ),
                running_mode=vision.RunningMode.IMAGE,
                min_detection_confidence=min_detection_confidence,
            )
        )
        self._landmarker = vision.FaceLandmarker.create_from_options(
            vision.FaceLandmarkerOptions(
                base_options=python.BaseOptions(
                    model_asset_path=landmarker_path,
                    delegate=python.BaseOptions.Delegate.CPU,
                ),
                running_mode=vision.RunningMode.IMAGE,
                num_faces=1,
                min_face_detection_confidence=min_detection_confidence,
                min_face_presence_confidence=min_detection_confidence,
            )
        )
        _log.info(
            "MediaPipe backend ready -- detector=%s landmarker=%s",
            os.path.basename(detector_path), os.path.basename(landmarker_path),
        )

    @staticmethod
    def _resolve(model_path: str) -> str:
        full_path = model_path if os.path.isabs(model_path) else os.path.join(_SCRIPT_DIR, model_path)
        if not os.path.exists(full_path):
            raise FileNotFoundError(f"MediaPipe model not found: {full_path}")
        return full_path

    @staticmethod
    def _to_mp_image(bgr: np.ndarray):
        import mediapipe as mp
        rgb = np.ascontiguousarray(cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB))
        return mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb)

    def find_faces(self, frame: np.ndarray) -> list[FaceCandidate]:
        result = self._detector.detect(self._to_mp_image(frame))
        faces = []
        for det in result.detections or []:
            box = det.bounding_box
            score = det.categories[0].score if det.categories else 0.0
            faces.append(FaceCandidate(
                bbox=(int(box.origin_x), int(box.origin_y), int(box.width), int(box.height)),
                score=float(score),
            ))
        return faces

    def extract_landmarks(self, frame: np.ndarray, roi: BBox) -> Optional[np.ndarray]:
        x, y, w, h = roi
        crop = frame[y:y + h, x:x + w]
        if crop.size == 0:
            return None
        result = self._landmarker.detect(self._to_mp_image(crop))
        if not result or not result.face_landmarks:
            return None
        ch, cw = crop.shape[:2]
        face_lms = result.face_landmarks[0]
        # Normalized crop coordinates -> frame pixels
        return np.array(
            [[x + lm.x * cw, y + lm.y * ch] for lm in face_lms],
            dtype=np.float32,
        )

    def close(self) -> None:
        for task in (self._landmarker, self._detector):
            if task is not None:
                task.close()
        self._landmarker = None
        self._detector = None


# ═══════════════════════════════════════════════════════════════
# LandmarkDetector
# ═══════════════════════════════════════════════════════════════

class LandmarkDetector:
    """Per-frame face + eye analysis with a cached face region.

    process() returns a DetectionOutcome and never raises for
    per-frame failures.
    """

    def __init__(
        self,
        backend: FaceBackend,
        face_threshold: float = FACE_CONFIDENCE_THRESHOLD,
        landmark_threshold: float = LANDMARK_CONFIDENCE_THRESHOLD,
        cache_ttl: float = 0.5,
        roi_margin: float = 0.3,
        left_eye_indices: Sequence[int] = LEFT_EYE,
        right_eye_indices: Sequence[int] = RIGHT_EYE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if len(left_eye_indices) < MIN_EYE_POINTS or len(right_eye_indices) < MIN_EYE_POINTS:
            raise ValueError(f"Each eye needs at least {MIN_EYE_POINTS} landmark indices.")
        self._backend = backend
        self.face_threshold = face_threshold
        self.landmark_threshold = landmark_threshold
        self.cache_ttl = cache_ttl
        self.roi_margin = roi_margin
        self._left_idx = np.asarray(left_eye_indices, dtype=np.int64)
        self._right_idx = np.asarray(right_eye_indices, dtype=np.int64)
        self._clock = clock

        self._cache: Optional[FaceObservation] = None
        self._cache_time = 0.0

        self.full_passes = 0
        self.cached_passes = 0
        self.errors = 0

    # ── Public API ────────────────────────────────────────────

    @property
    def cached_observation(self) -> Optional[FaceObservation]:
        return self._cache

    def apply_profile(self, profile: ThrottleProfile) -> None:
        self.cache_ttl = profile.cache_ttl

    def invalidate(self) -> None:
        self._cache = None
        self._cache_time = 0.0

    def process(self, frame: np.ndarray, frame_seq: int = 0,
                timestamp: Optional[float] = None) -> DetectionOutcome:
        """Analyze one frame.

        Args:
            frame: BGR uint8 image owned by the caller for the call's duration.
            frame_seq: Sequence number of the source FrameSample.
            timestamp: Capture timestamp (defaults to now).
        """
        now = self._clock()
        ts = now if timestamp is None else timestamp
        try:
            if self._cache_usable(now):
                outcome = self._cached_pass(frame, frame_seq, ts)
                if outcome is not None:
                    return outcome
                # Regression on the cached region: search the whole frame now
            return self._full_pass(frame, frame_seq, ts, now)
        except Exception as e:
            self.errors += 1
            self.invalidate()
            _log.debug("Detection failed on frame %d: %s", frame_seq, e)
            return DetectionOutcome.negative(PauseReason.DETECTION_ERROR)

    def get_stats(self) -> dict:
        return {
            "full_passes": self.full_passes,
            "cached_passes": self.cached_passes,
            "errors": self.errors,
            "cache_valid": self._cache is not None,
            "cache_ttl": self.cache_ttl,
        }

    def release(self) -> None:
        """Drop the cache and close the backend."""
        self.invalidate()
        if self._backend is not None:
            self._backend.close()
        _log.info("LandmarkDetector released")

    def __enter__(self) -> "LandmarkDetector":
        return self

    def __exit__(self, *args) -> None:
        self.release()

    # ── Passes ────────────────────────────────────────────────

    def _cache_usable(self, now: float) -> bool:
        return (
            self._cache is not None
            and (now - self._cache_time) < self.cache_ttl
            and self._cache.confidence >= self.face_threshold
        )

    def _full_pass(self, frame: np.ndarray, seq: int, ts: float, now: float) -> DetectionOutcome:
        self.full_passes += 1
        fh, fw = frame.shape[:2]
        faces = self._backend.find_faces(frame)

        if not faces:
            self.invalidate()
            return DetectionOutcome.negative(PauseReason.NO_FACE)
        if len(faces) > 1:
            self.invalidate()
            return DetectionOutcome.negative(
                PauseReason.MULTIPLE_FACES, face_detected=True, multiple_faces=True,
            )

        face = faces[0]
        if face.score < self.face_threshold:
            self.invalidate()
            return DetectionOutcome.negative(PauseReason.LOW_CONFIDENCE, face_detected=True)

        bbox = self._clip_bbox(face.bbox, fw, fh)
        roi = self._expand_roi(bbox, fw, fh)
        landmarks = self._backend.extract_landmarks(frame, roi)
        outcome = self._build_outcome(landmarks, bbox, face.score, frame, seq, ts)
        if outcome.usable:
            self._cache = outcome.observation
            self._cache_time = now
        else:
            self.invalidate()
        return outcome

    def _cached_pass(self, frame: np.ndarray, seq: int, ts: float) -> Optional[DetectionOutcome]:
        """Landmark-only pass on the cached ROI. None means regression."""
        self.cached_passes += 1
        fh, fw = frame.shape[:2]
        cached = self._cache
        prev_bbox = cached.pixel_bbox(fw, fh)
        roi = self._expand_roi(prev_bbox, fw, fh)

        landmarks = self._backend.extract_landmarks(frame, roi)
        outcome = self._build_outcome(landmarks, prev_bbox, cached.confidence, frame, seq, ts)
        if not outcome.usable:
            _log.debug("Cached ROI regressed on frame %d (%s)", seq,
                       outcome.reason.value if outcome.reason else "?")
            self.invalidate()
            return None

        outcome.used_cache = True
        # ROI follows the face, cache age does not reset
        self._cache = outcome.observation
        return outcome

    # ── Helpers ───────────────────────────────────────────────

    def _build_outcome(
        self,
        landmarks: Optional[np.ndarray],
        ref_bbox: BBox,
        face_confidence: float,
        frame: np.ndarray,
        seq: int,
        ts: float,
    ) -> DetectionOutcome:
        fh, fw = frame.shape[:2]
        if landmarks is None or len(landmarks) == 0:
            return DetectionOutcome.negative(PauseReason.EYES_NOT_VISIBLE, face_detected=True)

        landmarks = np.asarray(landmarks, dtype=np.float32)
        lm_conf = self._estimate_landmark_confidence(landmarks, ref_bbox)
        if lm_conf < self.landmark_threshold:
            return DetectionOutcome.negative(PauseReason.LOW_CONFIDENCE, face_detected=True)

        left = self._eye_points(landmarks, self._left_idx, fw, fh)
        right = self._eye_points(landmarks, self._right_idx, fw, fh)
        if left is None or right is None:
            return DetectionOutcome.negative(PauseReason.EYES_NOT_VISIBLE, face_detected=True)

        face_bbox = self._landmark_bbox(landmarks, fw, fh)
        observation = FaceObservation(
            bbox=(face_bbox[0] / fw, face_bbox[1] / fh, face_bbox[2] / fw, face_bbox[3] / fh),
            confidence=float(face_confidence),
            landmark_confidence=lm_conf,
            left_eye=left,
            right_eye=right,
            frame_seq=seq,
            timestamp=ts,
        )
        return DetectionOutcome(
            face_detected=True, multiple_faces=False, eyes_visible=True,
            observation=observation,
        )

    @staticmethod
    def _eye_points(landmarks: np.ndarray, indices: np.ndarray, fw: int, fh: int) -> Optional[np.ndarray]:
        """Eye contour in frame pixels, or None unless all points are finite and in frame."""
        if indices.max() >= landmarks.shape[0]:
            return None
        pts = landmarks[indices]
        if not np.all(np.isfinite(pts)):
            return None
        inside = (
            (pts[:, 0] >= 0) & (pts[:, 0] < fw)
            & (pts[:, 1] >= 0) & (pts[:, 1] < fh)
        )
        if int(inside.sum()) < MIN_EYE_POINTS:
            return None
        return pts.copy()

    @staticmethod
    def _clip_bbox(bbox: BBox, fw: int, fh: int) -> BBox:
        x, y, w, h = bbox
        x0, y0 = max(0, int(x)), max(0, int(y))
        x1, y1 = min(fw, int(x + w)), min(fh, int(y + h))
        return (x0, y0, max(0, x1 - x0), max(0, y1 - y0))

    def _expand_roi(self, bbox: BBox, fw: int, fh: int) -> BBox:
        x, y, w, h = bbox
        mx, my = int(w * self.roi_margin), int(h * self.roi_margin)
        return self._clip_bbox((x - mx, y - my, w + 2 * mx, h + 2 * my), fw, fh)

    @staticmethod
    def _landmark_bbox(landmarks: np.ndarray, fw: int, fh: int) -> BBox:
        finite = landmarks[np.all(np.isfinite(landmarks), axis=1)]
        xs, ys = finite[:, 0], finite[:, 1]
        x_min = max(0, int(xs.min()))
        y_min = max(0, int(ys.min()))
        x_max = min(fw, int(np.ceil(xs.max())))
        y_max = min(fh, int(np.ceil(ys.max())))
        return (x_min, y_min, max(1, x_max - x_min), max(1, y_max - y_min))

    @staticmethod
    def _estimate_landmark_confidence(landmarks: np.ndarray, bbox: BBox) -> float:
        """Estimate landmark quality from spatial consistency.

        Good landmarks are well spread within the face box. Clumped or
        out-of-box landmarks indicate poor quality.
        """
        x, y, w, h = bbox
        if w <= 0 or h <= 0 or landmarks.shape[0] == 0:
            return 0.0
        if not np.all(np.isfinite(landmarks)):
            return 0.0

        in_box = (
            (landmarks[:, 0] >= x)
            & (landmarks[:, 0] <= x + w)
            & (landmarks[:, 1] >= y)
            & (landmarks[:, 1] <= y + h)
        )
        coverage = float(in_box.sum()) / landmarks.shape[0]

        x_spread = landmarks[:, 0].std() / max(w, 1)
        y_spread = landmarks[:, 1].std() / max(h, 1)
        spread_score = min(1.0, (x_spread + y_spread) / 0.5)

        confidence = coverage * 0.6 + spread_score * 0.4
        return round(min(1.0, max(0.0, float(confidence))), 3)


def build_mediapipe_detector(config: dict, **kwargs) -> LandmarkDetector:
    """Create a LandmarkDetector on the MediaPipe backend from config sections.

    Raises FileNotFoundError when a model file is missing.
    """
    det = config["detector"]
    backend = MediaPipeFaceBackend(
        face_detector_model=det["face_detector_model"],
        landmarker_model=det["landmarker_model"],
    )
    return LandmarkDetector(
        backend,
        face_threshold=det["face_confidence_threshold"],
        landmark_threshold=det["landmark_confidence_threshold"],
        cache_ttl=config["governor"]["cache_ttl_s"],
        roi_margin=det["roi_margin"],
        left_eye_indices=config["landmarks"]["left_eye"],
        right_eye_indices=config["landmarks"]["right_eye"],
        **kwargs,
    )
