#!/usr/bin/env python3
"""Demo script for the feature engine.

Processes the stereo frames of a EuRoC sequence through the feature
engine only (no estimation, no map) and shows:
- Detected ORB features (green dots)
- Stereo observations coloured by depth (blue near, red far)

Usage:
    python examples/stereo_demo.py

Requirements:
    - EuRoC dataset downloaded to data/euroc/MH_01_easy/mav0/
    - A calibration file for it at data/euroc_calibration.yaml
"""

import cv2

from vislam import SequenceReader, init_feature_state, run_feature
from vislam.visualization import draw_stereo_features


def main() -> None:
    """Run the feature engine demo."""
    dataset_path = "data/euroc/MH_01_easy/mav0"
    calibration_path = "data/euroc_calibration.yaml"
    max_frames = None  # Set to int to limit frames, None for all

    print("Initializing feature engine...")
    reader = SequenceReader(dataset_path, use_imu=False)
    session = init_feature_state(calibration_path)
    print(f"Stereo baseline: {session.engine.calibration.baseline_meters:.4f} m")
    print(f"Processing {len(reader)} frames...")

    for i, sample in enumerate(reader):
        if max_frames is not None and i >= max_frames:
            break
        run_feature(sample, session)
        state = session.state

        if sample.is_valid:
            cv2.imshow(
                "stereo", draw_stereo_features(sample.left, sample.right, state.observations)
            )
            if cv2.waitKey(1) == 27:  # Esc
                break

        if i % 50 == 0:
            depths = [obs.depth for obs in state.observations]
            mean_depth = sum(depths) / len(depths) if depths else 0.0
            print(
                f"Frame {i:4d}: "
                f"{len(state.left):4d} features, "
                f"{len(state.observations):3d} 3D points, "
                f"average depth {mean_depth:.2f} m"
            )

    cv2.destroyAllWindows()
    print("Done!")


if __name__ == "__main__":
    main()
