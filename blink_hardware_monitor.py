"""
BlinkMore Engine -- Resource Governor
======================================
Tracks power source, memory pressure and process CPU load, and turns
them into the ThrottleProfile used by frame admission and the
landmark cache.

Features:
  - Samples every N admitted frames, never per frame.
  - Battery: frame skip of at least 3, longer cache TTL.
  - Memory pressure: doubled frame skip + smaller buffer pool,
    reverted after a fixed cool-down.
  - Frame skip always clamped to [1, ceiling] so tracking never stalls.
"""

import logging
import time
from collections import deque

import psutil

from blink_types import ThrottleProfile


_log = logging.getLogger("BlinkGovernor")


def _psutil_on_battery():
    # sensors_battery is missing on some platforms and returns None on desktops
    if not hasattr(psutil, "sensors_battery"):
        return False
    battery = psutil.sensors_battery()
    if battery is None:
        return False
    return not battery.power_plugged


def _psutil_memory_percent():
    return psutil.virtual_memory().percent


class ResourceGovernor:
    def __init__(self, base_skip=2, base_pool=3, sample_interval=30,
                 battery_min_skip=3, max_skip=8,
                 memory_pressure_percent=85.0, memory_cooldown_s=10.0,
                 cpu_overload_percent=85.0,
                 cache_ttl_s=0.5, battery_cache_ttl_s=1.0,
                 power_probe=None, memory_probe=None, cpu_probe=None,
                 clock=time.monotonic, history_len=60):
        if max_skip < 1:
            raise ValueError("max_skip must be >= 1")
        self.base_skip = max(1, int(base_skip))
        self.base_pool = max(1, int(base_pool))
        self.sample_interval = max(1, int(sample_interval))
        self.battery_min_skip = battery_min_skip
        self.max_skip = max_skip
        self.memory_pressure_percent = memory_pressure_percent
        self.memory_cooldown_s = memory_cooldown_s
        self.cpu_overload_percent = cpu_overload_percent
        self.cache_ttl_s = cache_ttl_s
        self.battery_cache_ttl_s = battery_cache_ttl_s

        self._power_probe = power_probe or _psutil_on_battery
        self._memory_probe = memory_probe or _psutil_memory_percent
        if cpu_probe is None:
            process = psutil.Process()
            cpu_probe = lambda: process.cpu_percent(interval=None)  # noqa: E731
        self._cpu_probe = cpu_probe
        self._clock = clock

        self._frames_since_sample = 0
        self._pressure_until = 0.0
        self._on_battery = False
        self.cpu_history = deque(maxlen=history_len)
        self.mem_history = deque(maxlen=history_len)
        self.samples_taken = 0

        self._profile = ThrottleProfile(
            frame_skip=self._clamp(self.base_skip),
            cache_ttl=self.cache_ttl_s,
            pool_capacity=self.base_pool,
        )

    @classmethod
    def from_config(cls, config, **probes):
        gov = config["governor"]
        adm = config["admission"]
        return cls(
            base_skip=adm["frame_skip"],
            base_pool=adm["pool_capacity"],
            sample_interval=gov["sample_interval_frames"],
            battery_min_skip=gov["battery_min_skip"],
            max_skip=gov["max_frame_skip"],
            memory_pressure_percent=gov["memory_pressure_percent"],
            memory_cooldown_s=gov["memory_cooldown_s"],
            cpu_overload_percent=gov["cpu_overload_percent"],
            cache_ttl_s=gov["cache_ttl_s"],
            battery_cache_ttl_s=gov["battery_cache_ttl_s"],
            **probes,
        )

    @property
    def profile(self) -> ThrottleProfile:
        return self._profile

    def on_frame_admitted(self):
        """Count one admitted frame; sample every `sample_interval` frames.

        Returns the new ThrottleProfile when it changed, else None.
        """
        self._frames_since_sample += 1
        if self._frames_since_sample < self.sample_interval:
            return None
        self._frames_since_sample = 0
        return self.sample()

    def sample(self):
        """Probe resources now. Returns the new profile if it changed."""
        now = self._clock()
        try:
            self._on_battery = bool(self._power_probe())
        except Exception as e:
            _log.debug("Power probe failed: %s", e)
        try:
            mem_pct = float(self._memory_probe())
        except Exception as e:
            _log.debug("Memory probe failed: %s", e)
            mem_pct = 0.0
        try:
            cpu_pct = float(self._cpu_probe())
        except Exception as e:
            _log.debug("CPU probe failed: %s", e)
            cpu_pct = 0.0

        self.samples_taken += 1
        self.mem_history.append(mem_pct)
        self.cpu_history.append(cpu_pct)

        if mem_pct >= self.memory_pressure_percent:
            if now >= self._pressure_until:
                _log.warning("Memory pressure %.1f%% -- throttling for %.0fs",
                             mem_pct, self.memory_cooldown_s)
            self._pressure_until = now + self.memory_cooldown_s
        under_pressure = now < self._pressure_until

        skip = self.base_skip
        ttl = self.cache_ttl_s
        pool = self.base_pool
        if self._on_battery:
            skip = max(skip, self.battery_min_skip)
            ttl = max(ttl, self.battery_cache_ttl_s)
        if cpu_pct >= self.cpu_overload_percent:
            skip += 1
        if under_pressure:
            skip *= 2
            pool = max(1, pool - 1)

        new_profile = ThrottleProfile(
            frame_skip=self._clamp(skip), cache_ttl=ttl, pool_capacity=pool,
        )
        if new_profile == self._profile:
            return None
        _log.info("Throttle profile %s -> %s (battery=%s mem=%.1f%% cpu=%.1f%%)",
                  self._profile, new_profile, self._on_battery, mem_pct, cpu_pct)
        self._profile = new_profile
        return new_profile

    def get_stats(self) -> dict:
        return {
            "on_battery": self._on_battery,
            "memory_pressure": self._clock() < self._pressure_until,
            "cpu_curr": self.cpu_history[-1] if self.cpu_history else 0.0,
            "mem_pct": self.mem_history[-1] if self.mem_history else 0.0,
            "samples": self.samples_taken,
            "profile": self._profile.to_dict(),
        }

    def _clamp(self, skip):
        return min(self.max_skip, max(1, int(skip)))
