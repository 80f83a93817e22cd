"""EuRoC MAV sequence reader producing a merged sample stream."""

from __future__ import annotations

import heapq
import logging
from pathlib import Path
from typing import Iterator

import cv2
import numpy as np

from ..types import InertialSample, Sample, StereoSample

logger = logging.getLogger(__name__)


class SequenceReader:
    """Reader for a recorded EuRoC sequence (cam0, cam1 and optional imu0).

    Iterating yields samples in non-decreasing timestamp order; an inertial
    sample and a stereo sample with the same timestamp come out IMU first,
    so the estimator has propagated to the image time before correcting.

    Example:
        >>> reader = SequenceReader("data/euroc/MH_01_easy/mav0")
        >>> for sample in reader:
        ...     run_slam(sample, map_handle, state)
    """

    def __init__(self, dataset_path: str | Path, use_imu: bool = True) -> None:
        """Initialize reader with path to a sequence.

        Args:
            dataset_path: Path to mav0 directory
            use_imu: Read imu0/data.csv if present

        Raises:
            FileNotFoundError: If dataset path or required directories don't exist
            ValueError: If data.csv is empty or invalid
        """
        self.dataset_path = Path(dataset_path)

        self.cam0_path = self.dataset_path / "cam0"
        self.cam1_path = self.dataset_path / "cam1"
        self.cam0_data_path = self.cam0_path / "data"
        self.cam1_data_path = self.cam1_path / "data"
        self.imu_csv_path = self.dataset_path / "imu0" / "data.csv"

        self._validate_paths()

        self._image_list = self._load_image_list()
        if not self._image_list:
            raise ValueError(f"No images found in {self.cam0_path / 'data.csv'}")

        self._imu: list[InertialSample] = []
        if use_imu and self.imu_csv_path.exists():
            self._imu = self._load_imu()
        logger.info(
            "Opened sequence %s: %d stereo frames, %d inertial samples",
            self.dataset_path,
            len(self._image_list),
            len(self._imu),
        )

    def _validate_paths(self) -> None:
        """Validate that all required paths exist."""
        if not self.dataset_path.exists():
            raise FileNotFoundError(f"Dataset path does not exist: {self.dataset_path}")

        if not self.cam0_path.exists():
            raise FileNotFoundError(
                f"cam0 directory not found: {self.cam0_path}\n"
                f"Expected structure: {self.dataset_path}/cam0/"
            )

        if not self.cam1_path.exists():
            raise FileNotFoundError(
                f"cam1 directory not found: {self.cam1_path}\n"
                f"Expected structure: {self.dataset_path}/cam1/"
            )

        if not self.cam0_data_path.exists():
            raise FileNotFoundError(f"cam0/data directory not found: {self.cam0_data_path}")

        if not self.cam1_data_path.exists():
            raise FileNotFoundError(f"cam1/data directory not found: {self.cam1_data_path}")

        csv_path = self.cam0_path / "data.csv"
        if not csv_path.exists():
            raise FileNotFoundError(
                f"cam0/data.csv not found: {csv_path}\n"
                f"This file is required to list image timestamps and filenames."
            )

    def _load_image_list(self) -> list[tuple[int, str]]:
        """Parse cam0/data.csv.

        CSV format:
            #timestamp [ns],filename
            1403636579763555584,1403636579763555584.png

        Returns:
            List of (timestamp_ns, filename), sorted by timestamp
        """
        csv_path = self.cam0_path / "data.csv"
        image_list = []

        with open(csv_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#"):
                    continue

                try:
                    timestamp_str, filename = line.split(",")
                    image_list.append((int(timestamp_str.strip()), filename.strip()))
                except ValueError as e:
                    raise ValueError(
                        f"Invalid line in {csv_path}: '{line}'\n"
                        f"Expected format: timestamp,filename"
                    ) from e

        image_list.sort(key=lambda item: item[0])
        return image_list

    def _load_imu(self) -> list[InertialSample]:
        """Parse imu0/data.csv (timestamp, w_xyz [rad/s], a_xyz [m/s^2]).

        Malformed rows are skipped.
        """
        samples = []
        skipped = 0
        with open(self.imu_csv_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                parts = line.split(",")
                if len(parts) < 7:
                    skipped += 1
                    continue
                try:
                    values = [float(p) for p in parts[1:7]]
                    samples.append(
                        InertialSample(
                            timestamp_ns=int(parts[0]),
                            gyro=np.array(values[0:3]),
                            accel=np.array(values[3:6]),
                        )
                    )
                except ValueError:
                    skipped += 1

        if skipped:
            logger.warning("Skipped %d malformed rows in %s", skipped, self.imu_csv_path)
        samples.sort(key=lambda s: s.timestamp_ns)
        return samples

    def load_stereo(self, index: int) -> StereoSample:
        """Load the stereo pair at a frame index.

        A missing or unreadable image yields None in that slot
        (an invalid sample), matching how a dropped camera frame looks.

        Raises:
            IndexError: If index is out of range
        """
        timestamp_ns, filename = self._image_list[index]
        left = self._read_image(self.cam0_data_path / filename, "Left")
        right = self._read_image(self.cam1_data_path / filename, "Right")
        return StereoSample(timestamp_ns=timestamp_ns, left=left, right=right)

    @staticmethod
    def _read_image(path: Path, side: str) -> np.ndarray | None:
        if not path.exists():
            logger.warning("%s camera image not found: %s", side, path)
            return None
        image = cv2.imread(str(path), cv2.IMREAD_GRAYSCALE)
        if image is None:
            logger.warning("Failed to load %s image: %s", side.lower(), path)
            return None
        return image

    def _stereo_stream(self) -> Iterator[tuple[int, int, Sample]]:
        for index in range(len(self._image_list)):
            sample = self.load_stereo(index)
            yield sample.timestamp_ns, 1, sample

    def _imu_stream(self) -> Iterator[tuple[int, int, Sample]]:
        for sample in self._imu:
            yield sample.timestamp_ns, 0, sample

    def __iter__(self) -> Iterator[Sample]:
        """Yield all samples in timestamp order (images loaded lazily)."""
        merged = heapq.merge(
            self._imu_stream(), self._stereo_stream(), key=lambda item: item[:2]
        )
        for _, _, sample in merged:
            yield sample

    @property
    def timestamps(self) -> list[int]:
        """Stereo frame timestamps in nanoseconds."""
        return [ts for ts, _ in self._image_list]

    @property
    def num_inertial(self) -> int:
        """Number of inertial samples."""
        return len(self._imu)

    def __len__(self) -> int:
        """Return total number of stereo pairs in the sequence."""
        return len(self._image_list)
