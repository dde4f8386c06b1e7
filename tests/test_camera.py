"""
BlinkMore Engine -- Camera Module Tests
========================================
Synthetic NumPy frames and a mocked cv2.VideoCapture -- NO real camera needed.
"""

from __future__ import annotations

import sys
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

# Add project root to path
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from blink_camera import (
    CameraFrameSource,
    CaptureLost,
    ConfigurationFailed,
    DeviceUnavailable,
)


# ─── Fixtures ─────────────────────────────────────────────────

def _make_valid_frame(
    height: int = 480,
    width: int = 640,
    brightness: int = 128,
) -> np.ndarray:
    """Create a synthetic BGR frame that passes all validation checks."""
    rng = np.random.RandomState(42)
    return rng.randint(
        max(20, brightness - 60),
        min(240, brightness + 60),
        size=(height, width, 3),
        dtype=np.uint8,
    )


def _make_mock_camera(frame: np.ndarray | None, ret: bool = True, opened: bool = True):
    """Create a mock cv2.VideoCapture that returns the given frame."""
    mock_cap = MagicMock()
    mock_cap.read.return_value = (ret, frame)
    mock_cap.isOpened.return_value = opened
    mock_cap.get.return_value = 0.0
    mock_cap.set.return_value = True
    return mock_cap


def _validate(frame, ret=True) -> bool:
    src = CameraFrameSource(0)
    return src._validate_frame(ret, frame)


# ─── Frame validation ─────────────────────────────────────────

def test_valid_frame_passes_all_checks():
    assert _validate(_make_valid_frame()) is True


def test_none_frame_fails():
    assert _validate(None) is False
    assert _validate(_make_valid_frame(), ret=False) is False


def test_wrong_channels_fails():
    assert _validate(np.full((480, 640, 4), 128, dtype=np.uint8)) is False
    assert _validate(np.full((480, 640), 128, dtype=np.uint8)) is False


def test_wrong_dtype_fails():
    assert _validate(np.full((480, 640, 3), 128.0, dtype=np.float32)) is False


def test_too_small_fails():
    assert _validate(_make_valid_frame(height=100, width=100)) is False


def test_all_black_and_all_white_fail():
    """Lens cap and sensor saturation are both rejected."""
    assert _validate(np.zeros((480, 640, 3), dtype=np.uint8)) is False
    assert _validate(np.full((480, 640, 3), 255, dtype=np.uint8)) is False


# ─── Session start / stop ─────────────────────────────────────

def test_unopened_device_raises_device_unavailable():
    mock_cap = _make_mock_camera(None, opened=False)
    with patch("blink_camera.cv2.VideoCapture", return_value=mock_cap):
        src = CameraFrameSource(0)
        with pytest.raises(DeviceUnavailable):
            src.start(lambda s: None)
    assert src.is_running is False
    mock_cap.release.assert_called_once()


def test_rejected_resolution_raises_configuration_failed():
    mock_cap = _make_mock_camera(_make_valid_frame())
    mock_cap.set.return_value = False
    with patch("blink_camera.cv2.VideoCapture", return_value=mock_cap):
        src = CameraFrameSource(0, width=1920, height=1080)
        with pytest.raises(ConfigurationFailed):
            src.start(lambda s: None)
    assert src.is_running is False
    mock_cap.release.assert_called_once()


def test_frames_delivered_with_increasing_seq():
    mock_cap = _make_mock_camera(_make_valid_frame())
    got = []
    enough = threading.Event()

    def on_frame(sample):
        got.append(sample.seq)
        sample.release()
        if len(got) >= 5:
            enough.set()

    with patch("blink_camera.cv2.VideoCapture", return_value=mock_cap):
        src = CameraFrameSource(0)
        src.start(on_frame)
        assert enough.wait(2.0)
        src.stop()

    assert got[:5] == [0, 1, 2, 3, 4]
    assert src.is_running is False


def test_no_frames_after_stop_returns():
    mock_cap = _make_mock_camera(_make_valid_frame())
    count = {"n": 0}

    def on_frame(sample):
        count["n"] += 1
        sample.release()

    with patch("blink_camera.cv2.VideoCapture", return_value=mock_cap):
        src = CameraFrameSource(0)
        src.start(on_frame)
        time.sleep(0.05)
        src.stop()
        after_stop = count["n"]
        time.sleep(0.05)

    assert count["n"] == after_stop
    mock_cap.release.assert_called_once()


def test_stop_is_safe_without_start():
    src = CameraFrameSource(0)
    src.stop()
    src.stop()
    assert src.is_running is False


def test_invalid_frames_are_counted_not_delivered():
    mock_cap = _make_mock_camera(np.zeros((480, 640, 3), dtype=np.uint8))
    delivered = []
    with patch("blink_camera.cv2.VideoCapture", return_value=mock_cap):
        src = CameraFrameSource(0)
        src.start(delivered.append)
        time.sleep(0.05)
        health = src.get_health_status()
        src.stop()

    assert delivered == []
    assert health["frames_dropped"] == health["frames_total"]
    assert health["frames_total"] > 0


# ─── Health status ────────────────────────────────────────────

def test_health_status_keys():
    src = CameraFrameSource(0)
    health = src.get_health_status()
    for key in ("connected", "running", "fps_actual", "frames_total",
                "frames_dropped", "drop_rate_pct", "resolution", "backend"):
        assert key in health
    assert health["connected"] is False
    assert health["drop_rate_pct"] == 0.0


def test_limits_from_config_section():
    src = CameraFrameSource.from_config({
        "camera_id": 1, "width": 320, "height": 240,
        "min_width": 64, "min_height": 48,
        "min_mean_brightness": 1.0, "max_mean_brightness": 254.0,
    })
    small_dim = np.full((60, 80, 3), 3, dtype=np.uint8)
    assert src._validate_frame(True, small_dim) is True
    # Class defaults are untouched
    assert _validate(small_dim) is False
    assert CameraFrameSource.MIN_WIDTH == 160


# ─── Unrequested end of session ───────────────────────────────

def test_repeated_read_failures_report_capture_lost():
    mock_cap = _make_mock_camera(None, ret=False)
    ended = []
    done = threading.Event()

    def on_ended(error):
        ended.append(error)
        done.set()

    with patch("blink_camera.cv2.VideoCapture", return_value=mock_cap):
        src = CameraFrameSource(0)
        src.start(lambda s: s.release(), on_ended)
        assert done.wait(2.0)
        src._thread.join(2.0)
        assert src.is_running is False
        src.stop()

    assert len(ended) == 1
    assert isinstance(ended[0], CaptureLost)


def test_exhausted_file_reports_clean_end():
    import cv2

    mock_cap = _make_mock_camera(None, ret=False)
    mock_cap.get.side_effect = lambda prop: (
        10.0 if prop in (cv2.CAP_PROP_FRAME_COUNT, cv2.CAP_PROP_POS_FRAMES) else 0.0
    )
    ended = []
    done = threading.Event()

    def on_ended(error):
        ended.append(error)
        done.set()

    with patch("blink_camera.cv2.VideoCapture", return_value=mock_cap):
        src = CameraFrameSource("clip.mp4")
        src.start(lambda s: s.release(), on_ended)
        assert done.wait(2.0)
        src.stop()

    assert ended == [None]


def test_requested_stop_does_not_report_end():
    mock_cap = _make_mock_camera(_make_valid_frame())
    ended = []
    with patch("blink_camera.cv2.VideoCapture", return_value=mock_cap):
        src = CameraFrameSource(0)
        src.start(lambda s: s.release(), ended.append)
        time.sleep(0.05)
        src.stop()
    assert ended == []
