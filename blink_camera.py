"""
BlinkMore Engine -- Camera Input Module
========================================
Owns ALL camera interaction. No other file should touch
cv2.VideoCapture directly.

Features:
  - FrameSource contract: start(on_frame) / stop(), frames on own thread
  - No frame is delivered after stop() returns
  - Frame validation (shape, dtype, channel count, brightness)
  - Health monitoring (FPS, drop rate, connection status)
  - Camera index or video file as input
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable, Optional, Union

import cv2
import numpy as np

from blink_types import FrameSample


# ─── Module Logger ─────────────────────────────────────────────
_log = logging.getLogger("BlinkCamera")


# ─── Capture Errors ────────────────────────────────────────────

class CaptureError(Exception):
    """Setup-time capture failure. Not retried by the engine."""


class PermissionDenied(CaptureError):
    """Camera access denied or restricted."""


class DeviceUnavailable(CaptureError):
    """No usable camera, or the device could not be opened."""


class ConfigurationFailed(CaptureError):
    """Capture session or detector could not be configured."""


class CaptureLost(CaptureError):
    """A running session stopped delivering frames on its own."""


FrameCallback = Callable[[FrameSample], None]
EndedCallback = Callable[[Optional[CaptureError]], None]


class FrameSource(ABC):
    """Abstract capture session.

    start() raises a CaptureError subclass on failure. Frames are
    delivered to on_frame from a thread owned by the source; the
    callback must not block.

    on_ended, when given, is called once from the capture thread if the
    session ends without stop() being asked for: with None when the
    input is exhausted, with a CaptureLost when reads keep failing.
    """

    @abstractmethod
    def start(self, on_frame: FrameCallback, on_ended: Optional[EndedCallback] = None) -> None:
        raise NotImplementedError

    @abstractmethod
    def stop(self) -> None:
        raise NotImplementedError

    @property
    @abstractmethod
    def is_running(self) -> bool:
        raise NotImplementedError

    def get_health_status(self) -> dict:
        return {"connected": self.is_running}


class CameraFrameSource(FrameSource):
    """Validated OpenCV capture running on a dedicated thread.

    Wraps cv2.VideoCapture with:
      - 1-frame buffer to minimize latency
      - Per-frame validation (shape, dtype, brightness, channels)
      - Monotonic timestamps and per-session sequence numbers
      - Health status reporting (FPS, drops, age)
    """

    # ── Validation constants ──────────────────────────────────
    MIN_HEIGHT: int = 120
    MIN_WIDTH: int = 160
    EXPECTED_CHANNELS: int = 3
    EXPECTED_DTYPE = np.uint8
    MIN_MEAN_BRIGHTNESS: float = 5.0    # lens cap / hw failure
    MAX_MEAN_BRIGHTNESS: float = 250.0  # sensor saturation
    FPS_WINDOW: int = 30
    MAX_CONSECUTIVE_FAILURES: int = 60

    def __init__(
        self,
        source: Union[int, str] = 0,
        width: Optional[int] = None,
        height: Optional[int] = None,
        backend: int = cv2.CAP_ANY,
        loop_file: bool = False,
        min_width: Optional[int] = None,
        min_height: Optional[int] = None,
        min_mean_brightness: Optional[float] = None,
        max_mean_brightness: Optional[float] = None,
    ) -> None:
        """
        Args:
            source: Camera index, or a path to a video file.
            width/height: Requested capture resolution (camera only).
            backend: OpenCV capture backend.
            loop_file: Rewind a video file when it ends instead of stopping.
            min_width/min_height: Smallest accepted frame size.
            min_mean_brightness/max_mean_brightness: Accepted mean pixel
                range; frames outside it are dropped as black or saturated.
        """
        if min_width is not None:
            self.MIN_WIDTH = int(min_width)
        if min_height is not None:
            self.MIN_HEIGHT = int(min_height)
        if min_mean_brightness is not None:
            self.MIN_MEAN_BRIGHTNESS = float(min_mean_brightness)
        if max_mean_brightness is not None:
            self.MAX_MEAN_BRIGHTNESS = float(max_mean_brightness)

        self._source = source
        self._width = width
        self._height = height
        self._backend = backend
        self._backend_name = self._resolve_backend_name(backend)
        self._loop_file = loop_file

        self._cap: Optional[cv2.VideoCapture] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._on_frame: Optional[FrameCallback] = None
        self._on_ended: Optional[EndedCallback] = None

        self._resolution: tuple[int, int] = (0, 0)
        self._seq = 0
        self._frames_total = 0
        self._frames_dropped = 0
        self._last_valid_timestamp = 0.0
        self._frame_times: deque[float] = deque(maxlen=self.FPS_WINDOW)

    # ── Public API ────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def is_file(self) -> bool:
        return isinstance(self._source, str)

    @classmethod
    def from_config(cls, camera: dict, source: Union[int, str, None] = None,
                    **kwargs) -> "CameraFrameSource":
        """Build from the `camera` config section; keyword args win."""
        options = {
            "width": camera.get("width"),
            "height": camera.get("height"),
            "min_width": camera.get("min_width"),
            "min_height": camera.get("min_height"),
            "min_mean_brightness": camera.get("min_mean_brightness"),
            "max_mean_brightness": camera.get("max_mean_brightness"),
        }
        options.update(kwargs)
        return cls(camera.get("camera_id", 0) if source is None else source, **options)

    def start(self, on_frame: FrameCallback, on_ended: Optional[EndedCallback] = None) -> None:
        """Open the device and begin delivering frames.

        Raises:
            DeviceUnavailable: capture could not be opened.
            ConfigurationFailed: the device rejected the capture settings.
        """
        with self._lock:
            if self.is_running:
                return

            if self.is_file:
                cap = cv2.VideoCapture(self._source)
            else:
                cap = cv2.VideoCapture(self._source, self._backend)
            if cap is None or not cap.isOpened():
                if cap is not None:
                    cap.release()
                raise DeviceUnavailable(f"cannot open capture source {self._source!r}")

            try:
                self._configure(cap)
            except ConfigurationFailed:
                cap.release()
                raise

            self._cap = cap
            self._on_frame = on_frame
            self._on_ended = on_ended
            self._seq = 0
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._capture_loop, name="BlinkCapture", daemon=True
            )
            self._thread.start()

        _log.info(
            "Capture started -- source=%r backend=%s resolution=%s",
            self._source, self._backend_name, self._resolution,
        )

    def stop(self) -> None:
        """Stop capture. Blocks until the capture thread has exited."""
        with self._lock:
            thread = self._thread
            self._stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        with self._lock:
            self._thread = None
            self._on_frame = None
            self._on_ended = None
            if self._cap is not None:
                self.release()

    def get_health_status(self) -> dict:
        """Return a snapshot of capture health metrics."""
        now = time.monotonic()
        last_age_ms = (
            (now - self._last_valid_timestamp) * 1000.0
            if self._last_valid_timestamp > 0
            else float("inf")
        )
        return {
            "connected": self._cap is not None and self._cap.isOpened(),
            "running": self.is_running,
            "fps_actual": self._calculate_fps(),
            "frames_total": self._frames_total,
            "frames_dropped": self._frames_dropped,
            "drop_rate_pct": (
                (self._frames_dropped / self._frames_total * 100.0)
                if self._frames_total > 0
                else 0.0
            ),
            "last_valid_frame_age_ms": round(last_age_ms, 2),
            "resolution": self._resolution,
            "backend": self._backend_name,
        }

    def release(self) -> None:
        """Release the capture device and log final statistics."""
        if self._cap is None:
            return
        health = self.get_health_status()
        _log.info(
            "Capture releasing -- total=%d dropped=%d (%.1f%%) avg_fps=%.1f",
            health["frames_total"],
            health["frames_dropped"],
            health["drop_rate_pct"],
            health["fps_actual"],
        )
        self._cap.release()
        self._cap = None

    # ── Context manager support ───────────────────────────────

    def __enter__(self) -> "CameraFrameSource":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    # ── Private helpers ───────────────────────────────────────

    def _configure(self, cap: cv2.VideoCapture) -> None:
        if not self.is_file:
            # Minimal buffer keeps delivered frames current
            cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
            if self._width and not cap.set(cv2.CAP_PROP_FRAME_WIDTH, self._width):
                raise ConfigurationFailed(f"width {self._width} rejected")
            if self._height and not cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self._height):
                raise ConfigurationFailed(f"height {self._height} rejected")
        self._resolution = (
            int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )

    def _capture_loop(self) -> None:
        failures = 0
        ended: Optional[CaptureError] = None
        ended_early = False
        while not self._stop_event.is_set():
            ok, frame, timestamp = self._read_validated_frame()
            if not ok:
                if self._cap is not None and self.is_file and self._end_of_file():
                    if self._loop_file:
                        self._cap.set(cv2.CAP_PROP_POS_FRAMES, 0)
                        continue
                    _log.info("Video file exhausted -- capture loop ending")
                    ended_early = True
                    break
                failures += 1
                if failures >= self.MAX_CONSECUTIVE_FAILURES:
                    _log.error("Capture failing repeatedly (%d frames) -- stopping", failures)
                    ended = CaptureLost(f"{failures} consecutive unusable frames")
                    ended_early = True
                    break
                continue
            failures = 0

            sample = FrameSample(self._seq, timestamp, frame)
            self._seq += 1

            # stop() may have been requested while reading
            if self._stop_event.is_set():
                sample.release()
                break
            callback = self._on_frame
            if callback is None:
                sample.release()
                break
            try:
                callback(sample)
            except Exception:
                _log.exception("Frame callback raised -- frame %d dropped", sample.seq)
                sample.release()

        on_ended = self._on_ended
        if ended_early and on_ended is not None and not self._stop_event.is_set():
            try:
                on_ended(ended)
            except Exception:
                _log.exception("Capture-ended callback raised")

    def _end_of_file(self) -> bool:
        count = self._cap.get(cv2.CAP_PROP_FRAME_COUNT)
        pos = self._cap.get(cv2.CAP_PROP_POS_FRAMES)
        return count > 0 and pos >= count

    def _read_validated_frame(self) -> tuple[bool, Optional[np.ndarray], float]:
        """Read one frame and run the validation checklist.

        Returns (success, frame_or_None, monotonic_timestamp).
        """
        self._frames_total += 1
        timestamp = time.monotonic()
        ret, frame = self._cap.read()

        if not self._validate_frame(ret, frame):
            self._frames_dropped += 1
            return False, None, 0.0

        self._last_valid_timestamp = timestamp
        self._frame_times.append(timestamp)
        return True, frame, timestamp

    def _validate_frame(self, ret: bool, frame: Optional[np.ndarray]) -> bool:
        if not ret or frame is None:
            _log.debug("Validation FAIL: no frame returned")
            return False

        # (H, W, C) with 3 BGR channels
        if frame.ndim != 3 or frame.shape[2] != self.EXPECTED_CHANNELS:
            _log.debug("Validation FAIL: shape=%s", frame.shape)
            return False

        if frame.dtype != self.EXPECTED_DTYPE:
            _log.debug("Validation FAIL: dtype=%s (expected uint8)", frame.dtype)
            return False

        h, w = frame.shape[:2]
        if h < self.MIN_HEIGHT or w < self.MIN_WIDTH:
            _log.debug(
                "Validation FAIL: resolution %dx%d below minimum %dx%d",
                w, h, self.MIN_WIDTH, self.MIN_HEIGHT,
            )
            return False

        mean_brightness = float(frame.mean())
        if mean_brightness <= self.MIN_MEAN_BRIGHTNESS:
            _log.debug("Validation FAIL: all-black frame (mean=%.2f)", mean_brightness)
            return False
        if mean_brightness >= self.MAX_MEAN_BRIGHTNESS:
            _log.debug("Validation FAIL: all-white frame (mean=%.2f)", mean_brightness)
            return False

        return True

    def _calculate_fps(self) -> float:
        if len(self._frame_times) < 2:
            return 0.0
        elapsed = self._frame_times[-1] - self._frame_times[0]
        if elapsed <= 0:
            return 0.0
        return (len(self._frame_times) - 1) / elapsed

    @staticmethod
    def _resolve_backend_name(backend: int) -> str:
        names = {cv2.CAP_ANY: "Auto"}
        for attr, label in (("CAP_DSHOW", "DirectShow"), ("CAP_MSMF", "MediaFoundation"),
                            ("CAP_V4L2", "V4L2"), ("CAP_AVFOUNDATION", "AVFoundation")):
            if hasattr(cv2, attr):
                names[getattr(cv2, attr)] = label
        return names.get(backend, f"Unknown({backend})")
