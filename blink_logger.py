"""
BlinkMore Engine -- Structured Audit Logger
============================================
Records engine lifecycle, state transitions, throttle changes and
capture errors as JSONL for post-mortem analysis.

Key Features:
  - JSONL (one JSON object per line): timestamp, level, event, data
  - Thread-safe appends, flushed per entry
  - NumPy and Enum aware encoder
  - Passed to the engine explicitly; no global accessor
"""

import json
import logging
import os
import sys
import threading
import time
from enum import Enum
from typing import Any, Dict, Optional

import numpy as np


_log = logging.getLogger("BlinkAudit")


class BlinkJSONEncoder(json.JSONEncoder):
    """Handles NumPy types and enums for JSON serialization."""
    def default(self, obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.bool_):
            return bool(obj)
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


class BlinkLogger:
    """Append-only JSONL audit trail."""

    def __init__(self, log_path: str = "logs/blink_audit.jsonl"):
        self.log_path = log_path
        log_dir = os.path.dirname(log_path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        self._file = open(self.log_path, "a", encoding="utf-8")
        self._lock = threading.Lock()

        self.log({
            "python_version": sys.version.split()[0],
            "platform": sys.platform,
        }, level="SYSTEM", event="logger_open")

    @property
    def closed(self) -> bool:
        return self._file.closed

    def log(self, data: Dict[str, Any], level: str = "AUDIT", event: Optional[str] = None):
        """Append one entry. Calls after close() are ignored."""
        entry = {
            "timestamp": time.time(),
            "level": level,
            "event": event or data.get("event", "unknown"),
            "data": data,
        }
        line = json.dumps(entry, cls=BlinkJSONEncoder) + "\n"

        with self._lock:
            if self._file.closed:
                return
            self._file.write(line)
            self._file.flush()

    def event(self, name: str, **data):
        self.log(data, level="AUDIT", event=name)

    def warn(self, message: str, context: Optional[Dict] = None):
        _log.warning(message)
        self.log({"message": message, "context": context}, level="WARN", event="warning")

    def error(self, message: str, exception: Optional[BaseException] = None, event: str = "error"):
        _log.error(message)
        self.log({
            "message": message,
            "exception": type(exception).__name__ if exception else None,
            "detail": str(exception) if exception else None,
        }, level="ERROR", event=event)

    def close(self):
        """Write a shutdown marker and close the file."""
        if self._file.closed:
            return
        self.log({"message": "Logger shutting down"}, level="SYSTEM", event="logger_close")
        with self._lock:
            if not self._file.closed:
                self._file.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
