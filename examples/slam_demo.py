#!/usr/bin/env python3
"""Demo script for building a map from a EuRoC sequence.

Runs the full pipeline on every sample of the sequence:
- Inertial samples: state prediction
- Stereo samples: features, pose correction and map growth

The map is saved to data/map.json and can be replayed with
examples/tracking_demo.py.

Usage:
    python examples/slam_demo.py
"""

import logging

from vislam import (
    RerunVisualizer,
    SampleKind,
    SequenceReader,
    SlamConfig,
    TrackingStatus,
    init_map,
    init_state,
    load_calibration,
    run_slam,
    save_map,
)


def main() -> None:
    """Run the SLAM demo."""
    # Configuration
    dataset_path = "data/euroc/MH_01_easy/mav0"
    calibration_path = "data/euroc_calibration.yaml"
    vocabulary_path = "data/vocabulary.npz"
    map_path = "data/map.json"
    profile = SlamConfig.OFFLINE
    max_frames = None  # Set to int to limit frames

    logging.basicConfig(level=logging.INFO)
    print("Initializing SLAM session...")
    calibration = load_calibration(calibration_path)
    reader = SequenceReader(dataset_path)
    map_handle = init_map(calibration, vocabulary_path, profile)
    visualizer = RerunVisualizer("vislam-slam")

    print(f"Processing {len(reader)} stereo frames...")
    print()
    print(f"{'Frame':>6} {'Status':^14} {'Obs':>5} {'Map':>7} {'KF':>4} | {'Position'}")
    print("-" * 70)

    frame = 0
    lost_count = 0
    with init_state(calibration, profile) as state:
        for sample in reader:
            if not run_slam(sample, map_handle, state):
                print(f"Session failed: {state.failure}")
                break
            if sample.kind is not SampleKind.STEREO:
                continue

            frame += 1
            if state.status is TrackingStatus.LOST:
                lost_count += 1

            pose = state.get_pose()
            if frame % 5 == 0:
                visualizer.log_stereo(sample, state.feature_state)
                if pose is not None:
                    visualizer.log_pose(sample.timestamp_ns, pose)
                visualizer.log_map_points(map_handle.points())

            if frame % 20 == 0:
                position = "-" if pose is None else "[{:7.2f}, {:7.2f}, {:7.2f}]".format(
                    *pose.center
                )
                print(
                    f"{frame:6d} {state.status.value:^14} {len(state.feature_state):5d} "
                    f"{map_handle.num_landmarks:7d} {map_handle.num_keyframes:4d} | {position}"
                )

            if max_frames is not None and frame >= max_frames:
                break

    map_handle.wait_for_maintenance()
    map_handle.close()
    save_map(map_path, map_handle)

    print()
    print("=" * 70)
    print("SLAM SUMMARY")
    print("=" * 70)
    print(f"Stereo frames:      {state.stats.num_stereo}")
    print(f"Inertial samples:   {state.stats.num_inertial}")
    print(f"Tracked frames:     {state.stats.num_tracked}")
    print(f"Lost frames:        {lost_count}")
    print(f"Landmarks:          {map_handle.num_landmarks}")
    print(f"Keyframes:          {map_handle.num_keyframes}")
    print(f"Map saved to:       {map_path}")


if __name__ == "__main__":
    main()
