"""
BlinkMore Engine -- BlinkEngine (Core Orchestrator)
====================================================
Turns a live camera feed into a debounced eyes-open / eyes-closed /
paused signal.

Architecture: three execution contexts
  1. Capture thread (FrameSource): validated frames -> FrameAdmission.
     Never blocks; skipped frames are released on the spot.
  2. Processing thread: one frame at a time from the BufferPool through
     LandmarkDetector -> EyeOpennessEstimator -> TemporalSmoother ->
     BlinkStateMachine. Frames finish before the next is taken, so
     state transitions keep observation order.
  3. Consumer notification: SignalChannels for isEyeOpen / isActive
     (coalesced, isEyeOpen=False delivered immediately).

Features:
  - Collaborators injected at construction (no global services)
  - LifecycleController serializes start / stop / prepare_for_termination
  - ResourceGovernor feedback into frame skip, pool size and cache TTL
  - Sensitivity hot-swap from preference changes, capture keeps running
  - Structured JSONL audit trail (BlinkLogger)
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from blink_admission import BufferPool, FrameAdmission
from blink_camera import (
    CameraFrameSource,
    CaptureError,
    ConfigurationFailed,
    FrameSource,
    PermissionDenied,
)
from blink_face_pipeline import LandmarkDetector, build_mediapipe_detector
from blink_hardware_monitor import ResourceGovernor
from blink_lifecycle import LifecycleController
from blink_logger import BlinkLogger
from blink_permissions import AuthorizationStatus, PermissionsProvider, StaticPermissions
from blink_preferences import PreferencesSnapshot, PreferencesStore
from blink_publisher import SignalChannel
from blink_state import BlinkStateMachine
from blink_types import (
    DetectionOutcome,
    EyeMetric,
    FrameSample,
    PauseReason,
    ThrottleProfile,
    TrackingPhase,
    TrackingState,
)
from blink_utils_core import (
    CONFIG,
    SMOOTHING_WINDOW,
    EarEstimator,
    EyeOpennessEstimator,
    TemporalSmoother,
    deep_merge,
)


_log = logging.getLogger("BlinkEngine")

# Constants
DEFAULT_CONFIG = {
    "log_path": CONFIG["logging"]["log_path"],
    "smoothing_window": SMOOTHING_WINDOW,
    "coalesce_ms": CONFIG["publisher"]["coalesce_ms"],
    "queue_size": CONFIG["publisher"]["queue_size"],
    "permission_timeout_s": 30.0,
    "worker_poll_s": 0.1,
}


class BlinkEngine:
    """
    Blink-detection engine.
    Orchestrates Capture -> Processing -> Consumer signals.

    `config` takes the flat keys of DEFAULT_CONFIG, plus camera_id, width
    and height for the default camera. Nested sections in
    config.yaml form (e.g. {"detector": {...}, "governor": {...}}) are
    merged over the loaded CONFIG and feed the default camera, detector
    and governor. A detector passed in is reused across restarts and
    only released by prepare_for_termination().
    """

    def __init__(
        self,
        config: Optional[dict] = None,
        source: Optional[FrameSource] = None,
        detector: Optional[LandmarkDetector] = None,
        detector_factory: Optional[Callable[[], LandmarkDetector]] = None,
        permissions: Optional[PermissionsProvider] = None,
        preferences: Optional[PreferencesStore] = None,
        estimator: Optional[EyeOpennessEstimator] = None,
        governor: Optional[ResourceGovernor] = None,
        audit_logger: Optional[BlinkLogger] = None,
    ):
        config = config or {}
        flat = {k: v for k, v in config.items() if not isinstance(v, dict)}
        sections = {k: v for k, v in config.items() if isinstance(v, dict)}
        self.config = {**DEFAULT_CONFIG, **flat}
        self.settings = deep_merge(CONFIG, sections)

        # 1. Collaborators
        self.source = source or CameraFrameSource.from_config(
            self.settings["camera"],
            source=config.get("camera_id"),
            **{k: config[k] for k in ("width", "height") if k in config},
        )
        # Injected detectors belong to the caller: invalidated on stop, not closed
        self._owns_detector = detector is None
        self._injected_detector = detector
        if detector is not None:
            self._detector_factory = lambda: detector
        else:
            self._detector_factory = detector_factory or (
                lambda: build_mediapipe_detector(self.settings)
            )
        self.permissions = permissions or StaticPermissions(AuthorizationStatus.AUTHORIZED)
        self.preferences = preferences or PreferencesStore.from_config(self.settings)
        self.estimator = estimator or EarEstimator(self.preferences.snapshot.sensitivity_threshold)
        self.governor = governor or ResourceGovernor.from_config(self.settings)
        self.audit = audit_logger or BlinkLogger(self.config["log_path"])

        # 2. Pipeline stages
        profile = self.governor.profile
        self.admission = FrameAdmission(profile.frame_skip, BufferPool(profile.pool_capacity))
        self.smoother = TemporalSmoother(self.config["smoothing_window"])
        self.state_machine = BlinkStateMachine()
        self._detector: Optional[LandmarkDetector] = None

        # 3. Consumer signals
        self.eye_open_channel = SignalChannel(
            "isEyeOpen", initial=False,
            coalesce_ms=self.config["coalesce_ms"],
            immediate_values=(False,),
            queue_size=self.config["queue_size"],
        )
        self.active_channel = SignalChannel(
            "isActive", initial=False, coalesce_ms=0,
            queue_size=self.config["queue_size"],
        )
        self.state_machine.add_listener(self._on_transition)
        self.preferences.subscribe(self._on_preferences)

        # 4. Threads / lifecycle
        self.lifecycle = LifecycleController(self._do_start, self._do_stop)
        self._accepting = threading.Event()
        self._worker_stop = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._terminated = False
        self._session = 0

        self.frames_processed = 0
        self.frames_negative = 0
        self.last_metric: Optional[EyeMetric] = None
        self.last_error: Optional[CaptureError] = None

    # ── Public API ────────────────────────────────────────────

    @property
    def is_eye_open(self) -> bool:
        """Debounced public signal."""
        return bool(self.eye_open_channel.value)

    @property
    def is_active(self) -> bool:
        return bool(self.active_channel.value)

    @property
    def state(self) -> TrackingState:
        return self.state_machine.state

    def start(self) -> bool:
        """Start tracking. Raises a CaptureError subclass on setup failure.

        Returns False if the engine is already starting or running.
        """
        if self._terminated:
            raise RuntimeError("BlinkEngine has been terminated")
        return self.lifecycle.start()

    def stop(self) -> bool:
        """Idempotent. A stop during start runs once the start completes."""
        return self.lifecycle.stop()

    def prepare_for_termination(self, timeout: Optional[float] = None) -> bool:
        """Synchronous shutdown for process exit.

        Blocks until capture has stopped and queued frames are released,
        then closes the signal channels and the audit log.
        """
        if self._terminated:
            return True
        idle = self.lifecycle.terminate(timeout)
        if not idle:
            _log.error("Termination timed out waiting for capture to stop")
        self._terminated = True
        if self._injected_detector is not None:
            self._injected_detector.release()
        self.preferences.unsubscribe(self._on_preferences)
        self.eye_open_channel.close()
        self.active_channel.close()
        self.audit.event("engine_terminated", clean=idle,
                         frames_processed=self.frames_processed)
        self.audit.close()
        return idle

    def get_status(self) -> dict:
        """Diagnostics snapshot."""
        sm = self.state_machine
        detector = self._detector
        return {
            "state": str(sm.state),
            "phase": sm.phase.value,
            "pause_reason": sm.pause_reason.value if sm.pause_reason else None,
            "is_eye_open": self.is_eye_open,
            "is_active": self.is_active,
            "lifecycle": self.lifecycle.phase.value,
            "throttle": self.governor.profile.to_dict(),
            "admission": self.admission.get_stats(),
            "frames_processed": self.frames_processed,
            "frames_negative": self.frames_negative,
            "last_metric": self.last_metric.to_dict() if self.last_metric else None,
            "detector": detector.get_stats() if detector is not None else None,
            "camera": self.source.get_health_status(),
            "last_error": repr(self.last_error) if self.last_error else None,
        }

    def __enter__(self) -> "BlinkEngine":
        return self

    def __exit__(self, *args) -> None:
        self.prepare_for_termination()

    # ── Lifecycle hooks (called by LifecycleController) ──────

    def _do_start(self) -> None:
        self.state_machine.begin_start()
        try:
            self._check_permissions()
            try:
                self._detector = self._detector_factory()
            except FileNotFoundError as e:
                raise ConfigurationFailed(str(e)) from e

            profile = self.governor.profile
            self.admission.apply_profile(profile)
            self._detector.apply_profile(profile)
            self.smoother.reset()

            self._worker_stop.clear()
            self._worker = threading.Thread(
                target=self._worker_loop, name="BlinkProcessing", daemon=True
            )
            self._worker.start()
            self._accepting.set()
            self._session += 1
            session = self._session
            self.source.start(
                self._on_frame,
                lambda error: self._on_capture_ended(session, error),
            )
        except BaseException as e:
            self._teardown()
            self.state_machine.fail_start()
            if isinstance(e, CaptureError):
                self.last_error = e
                self.audit.error(f"Capture setup failed: {e}", e, event="capture_error")
            raise

        self.last_error = None
        self.state_machine.confirm_running()
        self.audit.event("engine_start", throttle=self.governor.profile.to_dict())
        _log.info("BlinkEngine started")

    def _do_stop(self) -> None:
        self.state_machine.begin_stop()
        try:
            self._teardown()
        finally:
            self.state_machine.finish_stop()
            self.eye_open_channel.flush()
            self.audit.event("engine_stop", frames_processed=self.frames_processed,
                             frames_negative=self.frames_negative)
            _log.info("BlinkEngine stopped")

    def _teardown(self) -> None:
        """Stop capture, drain the worker, release buffers and detector."""
        self._accepting.clear()
        try:
            self.source.stop()
        finally:
            self._worker_stop.set()
            self.admission.pool.wake()
            worker = self._worker
            if worker is not None and worker is not threading.current_thread():
                worker.join()
            self._worker = None
            dropped = self.admission.pool.clear()
            if dropped:
                _log.debug("Released %d queued frame(s)", dropped)
            self.smoother.reset()
            detector, self._detector = self._detector, None
            if detector is not None:
                if self._owns_detector:
                    detector.release()
                else:
                    detector.invalidate()

    def _check_permissions(self) -> None:
        status = self.permissions.check_access()
        if status is AuthorizationStatus.NOT_DETERMINED:
            _log.info("Camera permission not determined -- requesting")
            if self.permissions.wait_for_access(self.config["permission_timeout_s"]):
                return
            raise PermissionDenied("camera access was not granted")
        if status is not AuthorizationStatus.AUTHORIZED:
            raise PermissionDenied(f"camera access {status.value}")

    # ── Capture context ───────────────────────────────────────

    def _on_frame(self, sample: FrameSample) -> None:
        """FrameSource callback. Must never block."""
        if not self._accepting.is_set():
            sample.release()
            return
        self.admission.admit(sample)

    def _on_capture_ended(self, session: int, error: Optional[CaptureError]) -> None:
        """FrameSource end-of-session callback (capture thread).

        Stopping joins the capture thread, so the stop runs elsewhere.
        """
        threading.Thread(
            target=self._stop_after_capture_ended, args=(session, error),
            name="BlinkCaptureEnded", daemon=True,
        ).start()

    def _stop_after_capture_ended(self, session: int, error: Optional[CaptureError]) -> None:
        if session != self._session or not self.lifecycle.is_running:
            return
        if error is not None:
            self.last_error = error
            self.audit.error(f"Capture lost: {error}", error, event="capture_error")
        else:
            self.audit.event("capture_ended")
        _log.warning("Capture ended on its own -- stopping tracking")
        self.lifecycle.stop()

    # ── Processing context ────────────────────────────────────

    def _worker_loop(self) -> None:
        poll = self.config["worker_poll_s"]
        while not self._worker_stop.is_set():
            sample = self.admission.pool.take(timeout=poll)
            if sample is None:
                continue
            if self._worker_stop.is_set():
                sample.release()
                break
            try:
                self._process_sample(sample)
            except Exception as e:
                # The processing thread must survive any per-frame failure
                _log.error("Processing error on frame %d: %s", sample.seq, e, exc_info=True)

    def _process_sample(self, sample: FrameSample) -> None:
        """Run one admitted frame through the pipeline, then release it."""
        profile = self.governor.on_frame_admitted()
        if profile is not None:
            self._apply_profile(profile)

        detector = self._detector
        try:
            if detector is None:
                return
            outcome = detector.process(sample.pixels, sample.seq, sample.timestamp)
        finally:
            sample.release()

        self.frames_processed += 1
        self._apply_outcome(outcome)

    def _apply_outcome(self, outcome: DetectionOutcome) -> None:
        if not outcome.usable:
            self.frames_negative += 1
            self.smoother.reset()
            self.state_machine.on_negative(outcome.reason or PauseReason.NO_FACE)
            return

        metric = self.estimator.estimate(outcome.observation)
        self.last_metric = metric
        verdict = self.smoother.update(metric.is_open)
        self.state_machine.on_observation(verdict)

    def _apply_profile(self, profile: ThrottleProfile) -> None:
        self.admission.apply_profile(profile)
        if self._detector is not None:
            self._detector.apply_profile(profile)
        self.audit.event("throttle_change", **profile.to_dict())

    # ── Notifications ─────────────────────────────────────────

    def _on_transition(self, old: TrackingState, new: TrackingState) -> None:
        self.eye_open_channel.publish(new.phase is TrackingPhase.ACTIVE and new.eye_open)
        self.active_channel.publish(new.phase in (TrackingPhase.ACTIVE, TrackingPhase.PAUSED))

        if old.phase is not new.phase:
            _log.info("Tracking %s -> %s", old, new)
        self.audit.event(
            "state_transition",
            from_state=str(old), to_state=str(new),
            reason=new.reason.value if new.reason else None,
            at=time.monotonic(),
        )

    def _on_preferences(self, old: PreferencesSnapshot, new: PreferencesSnapshot) -> None:
        if new.sensitivity_threshold != old.sensitivity_threshold:
            self.estimator.threshold = new.sensitivity_threshold
