"""Command-line entry point.

Usage:
    vislam slam CALIB VOCABULARY SEQUENCE OUT_MAP [--online]
    vislam track CALIB MAP SEQUENCE
    vislam features CALIB SEQUENCE

Ctrl-C stops the session cleanly; ``slam`` still saves the map built so
far.
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from collections.abc import Iterable, Iterator
from pathlib import Path

from .config import SlamConfig, load_config
from .errors import VislamError
from .estimator import TrackingStatus
from .io import SequenceReader
from .slam_system import (
    init_feature_state,
    init_map,
    init_state,
    load_map,
    run_feature,
    run_slam,
    run_tracking,
    save_map,
)
from .types import Sample, SampleKind
from .visualization import RerunVisualizer

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_INIT_ERROR = 1
EXIT_SESSION_FAILED = 2


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for all subcommands."""
    parser = argparse.ArgumentParser(
        prog="vislam", description="Stereo visual-inertial SLAM and tracking"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    slam = subparsers.add_parser("slam", help="Build a map from a recorded sequence")
    slam.add_argument("calibration", type=Path, help="Calibration file (JSON or YAML)")
    slam.add_argument("vocabulary", type=Path, help="Vocabulary file (.npz or .json)")
    slam.add_argument("sequence", type=Path, help="EuRoC mav0 directory")
    slam.add_argument("out_map", type=Path, help="Map file to write")
    slam.add_argument(
        "--online", action="store_true", help="Prefer speed over accuracy"
    )

    track = subparsers.add_parser("track", help="Track against a saved map")
    track.add_argument("calibration", type=Path, help="Calibration file (JSON or YAML)")
    track.add_argument("map", type=Path, help="Map file written by 'slam'")
    track.add_argument("sequence", type=Path, help="EuRoC mav0 directory")

    features = subparsers.add_parser("features", help="Run the feature engine only")
    features.add_argument("calibration", type=Path, help="Calibration file (JSON or YAML)")
    features.add_argument("sequence", type=Path, help="EuRoC mav0 directory")
    features.add_argument("--no-3d", action="store_true", help="Detect only, no stereo")

    for sub in (slam, track, features):
        sub.add_argument("--config", type=Path, help="YAML config overrides")
        sub.add_argument("--max-frames", type=int, help="Stop after N stereo frames")
        sub.add_argument("--no-imu", action="store_true", help="Ignore imu0 data")
        sub.add_argument("--rerun", action="store_true", help="Stream to a Rerun viewer")

    return parser


def _samples(
    samples: Iterable[Sample],
    stop: threading.Event,
    max_frames: int | None,
) -> Iterator[Sample]:
    """Yield samples until the stream ends, ``stop`` is set or enough frames."""
    frames = 0
    for sample in samples:
        if stop.is_set():
            logger.info("Stop requested, ending session")
            return
        if sample.kind is SampleKind.STEREO:
            if max_frames is not None and frames >= max_frames:
                return
            frames += 1
        yield sample


def _visualizer(args: argparse.Namespace) -> RerunVisualizer | None:
    if not args.rerun:
        return None
    return RerunVisualizer("vislam")


def run_slam_command(args: argparse.Namespace, stop: threading.Event) -> int:
    """Build a map and save it, even after a failure or a stop request."""
    profile = SlamConfig.ONLINE if args.online else SlamConfig.OFFLINE
    config = load_config(args.config, profile)
    reader = SequenceReader(args.sequence, use_imu=not args.no_imu)
    map_handle = init_map(args.calibration, args.vocabulary, config=config)
    state = init_state(args.calibration, config=config)
    visualizer = _visualizer(args)

    status = TrackingStatus.UNINITIALIZED
    exit_code = EXIT_OK
    try:
        for sample in _samples(reader, stop, args.max_frames):
            if not run_slam(sample, map_handle, state):
                logger.error("SLAM failed: %s", state.failure)
                exit_code = EXIT_SESSION_FAILED
                break
            if state.status is not status:
                logger.info("Tracking status: %s -> %s", status.value, state.status.value)
                status = state.status
            if visualizer is not None and sample.kind is SampleKind.STEREO:
                visualizer.log_stereo(sample, state.feature_state)
                pose = state.get_pose()
                if pose is not None:
                    visualizer.log_pose(sample.timestamp_ns, pose)
                visualizer.log_map_points(map_handle.points())
    finally:
        state.close()
        map_handle.wait_for_maintenance()
        map_handle.close()
        save_map(args.out_map, map_handle)

    stats = state.stats
    logger.info(
        "Processed %d stereo / %d inertial samples; tracked %d frames; "
        "%d landmarks, %d keyframes",
        stats.num_stereo,
        stats.num_inertial,
        stats.num_tracked,
        map_handle.num_landmarks,
        map_handle.num_keyframes,
    )
    return exit_code


def run_track_command(args: argparse.Namespace, stop: threading.Event) -> int:
    """Track a sequence against a frozen map and print the trajectory."""
    config = load_config(args.config, SlamConfig.ONLINE)
    reader = SequenceReader(args.sequence, use_imu=not args.no_imu)
    map_handle = load_map(args.map, args.calibration)
    state = init_state(args.calibration, config=config)
    visualizer = _visualizer(args)
    if visualizer is not None:
        visualizer.log_map_points(map_handle.points())

    try:
        for sample in _samples(reader, stop, args.max_frames):
            run_tracking(sample, map_handle, state)
            if sample.kind is not SampleKind.STEREO:
                continue
            pose = state.get_pose()
            if pose is None:
                print(f"{sample.timestamp_ns} {state.status.value}")
                continue
            x, y, z = pose.center
            print(f"{sample.timestamp_ns} {state.status.value} {x:.4f} {y:.4f} {z:.4f}")
            if visualizer is not None:
                visualizer.log_stereo(sample, state.feature_state)
                visualizer.log_pose(sample.timestamp_ns, pose)
    finally:
        map_handle.close()
    return EXIT_OK


def run_features_command(args: argparse.Namespace, stop: threading.Event) -> int:
    """Print per-frame feature counts."""
    config = load_config(args.config, SlamConfig.ONLINE)
    reader = SequenceReader(args.sequence, use_imu=False)
    session = init_feature_state(args.calibration, config)
    visualizer = _visualizer(args)

    for sample in _samples(reader, stop, args.max_frames):
        if not run_feature(sample, session, with_3d=not args.no_3d):
            continue
        state = session.state
        print(
            f"{state.timestamp_ns} left={len(state.left)} right={len(state.right)} "
            f"stereo={len(state.observations)}"
        )
        if visualizer is not None:
            visualizer.log_stereo(sample, state)
    return EXIT_OK


_COMMANDS = {
    "slam": run_slam_command,
    "track": run_track_command,
    "features": run_features_command,
}


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, run a subcommand and return its exit code."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    stop = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda signum, frame: stop.set())
    try:
        return _COMMANDS[args.command](args, stop)
    except (VislamError, FileNotFoundError, ValueError) as e:
        logger.error("%s", e)
        return EXIT_INIT_ERROR
    finally:
        signal.signal(signal.SIGINT, previous)


if __name__ == "__main__":
    raise SystemExit(main())
