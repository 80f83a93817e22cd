#!/usr/bin/env python3
"""Demo script for tracking against a saved map.

Loads the map written by examples/slam_demo.py (frozen, read-only) and
localizes the device on a sequence, drawing a top-down trajectory view.

Usage:
    python examples/tracking_demo.py
"""

import cv2

from vislam import (
    SampleKind,
    SequenceReader,
    SlamConfig,
    TrajectoryDrawer,
    init_state,
    load_calibration,
    load_map,
    run_tracking,
)


def main() -> None:
    """Run the tracking demo."""
    dataset_path = "data/euroc/MH_02_easy/mav0"
    calibration_path = "data/euroc_calibration.yaml"
    map_path = "data/map.json"

    calibration = load_calibration(calibration_path)
    map_handle = load_map(map_path, calibration)
    print(f"Loaded map: {map_handle.num_landmarks} landmarks, {map_handle.num_keyframes} keyframes")

    state = init_state(calibration, SlamConfig.ONLINE)
    drawer = TrajectoryDrawer()
    points = map_handle.points()

    for sample in SequenceReader(dataset_path):
        run_tracking(sample, map_handle, state)
        if sample.kind is not SampleKind.STEREO:
            continue

        pose = state.get_pose()
        if pose is not None:
            drawer.add(sample.timestamp_ns, pose)
        cv2.imshow("trajectory", drawer.draw(points))
        if cv2.waitKey(1) == 27:  # Esc
            break

    cv2.destroyAllWindows()
    print(f"Tracked {state.stats.num_tracked} of {state.stats.num_stereo} frames")


if __name__ == "__main__":
    main()
