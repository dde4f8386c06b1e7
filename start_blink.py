"""
BlinkMore Engine -- Launcher
=============================
Headless entry point: runs blink tracking on a camera or a video file,
drives the fade scheduler from the isEyeOpen signal and prints signal
changes until interrupted.

Usage:
  python start_blink.py --source 0
  python start_blink.py --source clip.mp4 --sensitivity high --blink-threshold 4
"""

import argparse
import logging
import queue
import sys
import time

from blink_camera import CameraFrameSource, CaptureError
from blink_engine import BlinkEngine
from blink_face_pipeline import build_mediapipe_detector
from blink_fade import FadeScheduler, LoggingFadeSink
from blink_hardware_monitor import ResourceGovernor
from blink_logger import BlinkLogger
from blink_permissions import permissions_from_config
from blink_preferences import PreferencesStore
from blink_utils_core import Sensitivity, load_config, setup_logger


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="BlinkMore blink-detection engine")
    parser.add_argument("--config", type=str, default=None, help="Path to config.yaml")
    parser.add_argument("--source", type=str, default=None, help="Camera ID (0, 1, ...) or video file path")
    parser.add_argument("--width", type=int, default=None, help="Capture width")
    parser.add_argument("--height", type=int, default=None, help="Capture height")
    parser.add_argument("--sensitivity", choices=[s.value for s in Sensitivity], default=None,
                        help="Eye-closure sensitivity level")
    parser.add_argument("--blink-threshold", type=float, default=None,
                        help="Seconds of open eyes before the fade (3-12)")
    parser.add_argument("--audit-log", type=str, default=None, help="JSONL audit log path")
    parser.add_argument("--log-level", type=str, default=None, help="DEBUG, INFO, WARNING ...")
    parser.add_argument("--permission", choices=["authorized", "denied", "not_determined"],
                        default="authorized", help="Simulated camera permission status")
    parser.add_argument("--duration", type=float, default=0.0,
                        help="Stop after N seconds (0 = run until Ctrl+C)")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    cfg = load_config(args.config)

    level = (args.log_level or cfg["logging"]["level"]).upper()
    setup_logger(None, getattr(logging, level, logging.INFO))

    # Source
    source_arg = args.source if args.source is not None else str(cfg["camera"]["camera_id"])
    source = int(source_arg) if source_arg.isdigit() else source_arg
    width = args.width or cfg["camera"]["width"]
    height = args.height or cfg["camera"]["height"]

    prefs = PreferencesStore.from_config(cfg)
    overrides = {}
    if args.sensitivity:
        overrides["sensitivity_threshold"] = Sensitivity(args.sensitivity).threshold
    if args.blink_threshold is not None:
        overrides["blink_threshold_seconds"] = args.blink_threshold
    if overrides:
        prefs.update(**overrides)

    audit_path = args.audit_log or cfg["logging"]["log_path"]

    print("=" * 60)
    print("  BlinkMore Engine -- Starting...")
    print(f"  Source:      {source}")
    print(f"  Resolution:  {width}x{height}")
    print(f"  Sensitivity: {prefs.snapshot.sensitivity_threshold:.2f}")
    print(f"  Blink after: {prefs.snapshot.blink_threshold_seconds:.0f}s")
    print(f"  Audit log:   {audit_path}")
    print("=" * 60)

    engine = None
    fade = None
    done = False
    exit_code = 0

    try:
        engine = BlinkEngine(
            config={"camera_id": source, "width": width, "height": height,
                    "log_path": audit_path,
                    "smoothing_window": cfg["smoother"]["window"],
                    "coalesce_ms": cfg["publisher"]["coalesce_ms"],
                    "queue_size": cfg["publisher"]["queue_size"]},
            source=CameraFrameSource.from_config(cfg["camera"], source=source,
                                                    width=width, height=height),
            detector_factory=lambda: build_mediapipe_detector(cfg),
            permissions=permissions_from_config(args.permission),
            preferences=prefs,
            governor=ResourceGovernor.from_config(cfg),
            audit_logger=BlinkLogger(audit_path),
        )

        snap = prefs.snapshot
        fade = FadeScheduler(
            LoggingFadeSink(),
            blink_threshold_seconds=snap.blink_threshold_seconds,
            fade_speed=snap.fade_speed,
            timeout_s=cfg["fade"]["timeout_s"],
            fade_out_s=cfg["fade"]["fade_out_s"],
            on_timeout=lambda: prefs.update(eye_tracking_enabled=False),
        )
        engine.eye_open_channel.subscribe(fade.on_eye_open)
        changes = engine.eye_open_channel.subscribe()

        def on_prefs(old, new):
            fade.apply_preferences(new)
            if new.eye_tracking_enabled == old.eye_tracking_enabled:
                return
            if not new.eye_tracking_enabled:
                engine.stop()
                return
            try:
                engine.start()
            except CaptureError as e:
                print(f"[BLINK] Tracking unavailable: {type(e).__name__}: {e}")
                prefs.update(eye_tracking_enabled=False)

        prefs.subscribe(on_prefs)
        prefs.update(eye_tracking_enabled=True)

        if not engine.is_active and not prefs.snapshot.eye_tracking_enabled:
            exit_code = 1
            done = True
        else:
            print("[BLINK] Tracking active. Press Ctrl+C to exit.")

        deadline = time.monotonic() + args.duration if args.duration > 0 else None
        while not done:
            if deadline is not None and time.monotonic() >= deadline:
                break
            try:
                eye_open = changes.get(timeout=0.25)
                print(f"[BLINK] isEyeOpen={eye_open}")
            except queue.Empty:
                pass
            if not prefs.snapshot.eye_tracking_enabled:
                print("[BLINK] Eye tracking disabled.")
                break

    except KeyboardInterrupt:
        print("\n[BLINK] Interrupted by User.")
    finally:
        print("[BLINK] Cleaning up...")
        if fade is not None:
            fade.close()
        if engine is not None:
            engine.prepare_for_termination(timeout=5.0)
            status = engine.get_status()
            print(f"[BLINK] Processed {status['frames_processed']} frame(s), "
                  f"{status['frames_negative']} without usable eyes.")
        print("[BLINK] Shutdown Complete.")

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
