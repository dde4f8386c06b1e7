"""
BlinkMore Engine -- Preferences
================================
Read-only preference snapshots and a change-notifying store.

Normalization on every update:
  - sensitivity_threshold: snapped to the high / medium / low level
  - blink_threshold_seconds: rounded, clamped to [3, 12]
  - fade_speed: rounded, clamped to [1, 5]
An update that normalizes to the current snapshot notifies nobody.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace, asdict
from typing import Callable, Optional

from blink_utils_core import CONFIG, discretize_sensitivity


_log = logging.getLogger("BlinkPreferences")

BLINK_THRESHOLD_MIN = 3.0
BLINK_THRESHOLD_MAX = 12.0
FADE_SPEED_MIN = 1.0
FADE_SPEED_MAX = 5.0


@dataclass(frozen=True)
class PreferencesSnapshot:
    sensitivity_threshold: float = 0.16
    blink_threshold_seconds: float = 6.0
    fade_speed: float = 5.0
    eye_tracking_enabled: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def _clamp_round(value: float, lo: float, hi: float) -> float:
    return float(min(hi, max(lo, round(float(value)))))


def normalize(snapshot: PreferencesSnapshot) -> PreferencesSnapshot:
    return PreferencesSnapshot(
        sensitivity_threshold=discretize_sensitivity(snapshot.sensitivity_threshold),
        blink_threshold_seconds=_clamp_round(
            snapshot.blink_threshold_seconds, BLINK_THRESHOLD_MIN, BLINK_THRESHOLD_MAX),
        fade_speed=_clamp_round(snapshot.fade_speed, FADE_SPEED_MIN, FADE_SPEED_MAX),
        eye_tracking_enabled=bool(snapshot.eye_tracking_enabled),
    )


PreferencesListener = Callable[[PreferencesSnapshot, PreferencesSnapshot], None]


class PreferencesStore:
    """In-memory preferences. Listeners get (old, new) after each real change."""

    def __init__(self, initial: Optional[PreferencesSnapshot] = None) -> None:
        self._lock = threading.Lock()
        self._snapshot = normalize(initial or PreferencesSnapshot())
        self._listeners: list[PreferencesListener] = []

    @classmethod
    def from_config(cls, config: dict = CONFIG) -> "PreferencesStore":
        prefs = config["preferences"]
        return cls(PreferencesSnapshot(
            sensitivity_threshold=prefs["sensitivity_threshold"],
            blink_threshold_seconds=prefs["blink_threshold_seconds"],
            fade_speed=prefs["fade_speed"],
            eye_tracking_enabled=prefs["eye_tracking_enabled"],
        ))

    @property
    def snapshot(self) -> PreferencesSnapshot:
        return self._snapshot

    def subscribe(self, listener: PreferencesListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: PreferencesListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def update(self, **changes) -> bool:
        """Apply field changes. Returns True if the snapshot changed."""
        with self._lock:
            old = self._snapshot
            new = normalize(replace(old, **changes))
            if new == old:
                return False
            self._snapshot = new
            listeners = list(self._listeners)
        _log.info("Preferences changed: %s", {
            k: v for k, v in new.to_dict().items() if old.to_dict()[k] != v
        })
        for listener in listeners:
            try:
                listener(old, new)
            except Exception:
                _log.exception("Preferences listener failed")
        return True
