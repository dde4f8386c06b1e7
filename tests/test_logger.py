"""
BlinkMore Engine -- Audit Logger Tests
=======================================
"""

import json
import sys
import threading
from pathlib import Path

import numpy as np

_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from blink_logger import BlinkLogger
from blink_types import PauseReason


def _read(path):
    with open(path, encoding="utf-8") as f:
        return [json.loads(line) for line in f]


def test_entries_are_jsonl_with_numpy_and_enums(tmp_path):
    path = tmp_path / "logs" / "audit.jsonl"
    logger = BlinkLogger(str(path))
    logger.event("state_transition", reason=PauseReason.NO_FACE,
                 ear=np.float32(0.25), seq=np.int64(7), eye=np.zeros((2, 2)))
    logger.close()

    entries = _read(path)
    events = [e["event"] for e in entries]
    assert events == ["logger_open", "state_transition", "logger_close"]
    data = entries[1]["data"]
    assert data["reason"] == "no_face"
    assert data["seq"] == 7
    assert abs(data["ear"] - 0.25) < 1e-6
    assert data["eye"] == [[0.0, 0.0], [0.0, 0.0]]
    assert entries[1]["level"] == "AUDIT"


def test_error_records_exception_type(tmp_path):
    path = tmp_path / "audit.jsonl"
    with BlinkLogger(str(path)) as logger:
        logger.error("setup failed", RuntimeError("no camera"), event="capture_error")
    entry = [e for e in _read(path) if e["event"] == "capture_error"][0]
    assert entry["level"] == "ERROR"
    assert entry["data"]["exception"] == "RuntimeError"
    assert entry["data"]["detail"] == "no camera"


def test_log_after_close_is_ignored(tmp_path):
    path = tmp_path / "audit.jsonl"
    logger = BlinkLogger(str(path))
    logger.close()
    logger.close()
    logger.event("late")
    assert logger.closed
    assert [e["event"] for e in _read(path)] == ["logger_open", "logger_close"]


def test_concurrent_writes_stay_line_atomic(tmp_path):
    path = tmp_path / "audit.jsonl"
    logger = BlinkLogger(str(path))

    def writer(n):
        for i in range(50):
            logger.event("tick", writer=n, i=i)

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    logger.close()

    ticks = [e for e in _read(path) if e["event"] == "tick"]
    assert len(ticks) == 200
