"""Save and load maps as JSON documents.

Layout:

    {
      "format": "vislam-map",
      "version": 1,
      "calibration": "<sha1 fingerprint>",
      "vocabulary": {"words": [[...]], "idf": [...]},
      "landmarks": [{"id", "position", "descriptor" (hex), "observation_count"}],
      "keyframes": [{"id", "timestamp_ns", "pose" (4x4), "keypoints_left",
                     "keypoints_right", "descriptors" (hex), "landmark_ids",
                     "points_camera"}]
    }

The vocabulary is embedded, so loading needs only the map file and the
calibration it was built with.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import numpy as np

from ..config import MaintenanceConfig, MapConfig
from ..errors import CorruptMapError, MapWriteError, MissingFileError, VocabularyError
from ..frontend.calibration import StereoCalibration
from ..frontend.pose import SE3
from .keyframe import Keyframe
from .landmark import Landmark
from .map_store import MapHandle, MapStore
from .vocabulary import VisualVocabulary

logger = logging.getLogger(__name__)

MAP_FORMAT = "vislam-map"
MAP_VERSION = 1


def _encode_descriptors(descriptors: np.ndarray) -> list[str]:
    return [bytes(row).hex() for row in np.asarray(descriptors, dtype=np.uint8)]


def _decode_descriptors(values: list[str]) -> np.ndarray:
    if not values:
        return np.empty((0, 32), dtype=np.uint8)
    return np.array([np.frombuffer(bytes.fromhex(v), dtype=np.uint8) for v in values])


def map_to_dict(handle: MapHandle) -> dict[str, Any]:
    """Serialize a map to a JSON-compatible mapping."""
    store = handle.store
    landmarks, keyframes = store.snapshot()
    return {
        "format": MAP_FORMAT,
        "version": MAP_VERSION,
        "calibration": store.calibration.fingerprint(),
        "vocabulary": store.vocabulary.to_dict(),
        "landmarks": [
            {
                "id": lm.id,
                "position": lm.position.tolist(),
                "descriptor": bytes(lm.descriptor).hex(),
                "observation_count": lm.observation_count,
            }
            for lm in landmarks
        ],
        "keyframes": [
            {
                "id": kf.id,
                "timestamp_ns": kf.timestamp_ns,
                "pose": kf.pose.to_matrix().tolist(),
                "keypoints_left": kf.keypoints_left.tolist(),
                "keypoints_right": kf.keypoints_right.tolist(),
                "descriptors": _encode_descriptors(kf.descriptors),
                "landmark_ids": kf.landmark_ids.tolist(),
                "points_camera": kf.points_camera.tolist(),
            }
            for kf in keyframes
        ],
    }


def save_map(path: str | Path, handle: MapHandle) -> None:
    """Write a map to ``path``, replacing any existing file.

    The document is written to a temporary file in the same directory and
    moved into place, so an interrupted save never leaves a truncated map.
    Safe to call after a failed SLAM session.

    Raises:
        MapWriteError: If the file can't be written
    """
    path = Path(path)
    document = map_to_dict(handle)

    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".tmp", dir=path.parent
        )
        with os.fdopen(fd, "w") as f:
            json.dump(document, f)
        os.replace(tmp_name, path)
    except OSError as e:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise MapWriteError(f"Cannot write map to {path}: {e}") from e

    logger.info(
        "Saved map to %s (%d landmarks, %d keyframes)",
        path,
        len(document["landmarks"]),
        len(document["keyframes"]),
    )


def _parse_landmark(data: dict) -> Landmark:
    return Landmark(
        id=int(data["id"]),
        position=np.array(data["position"], dtype=np.float64),
        descriptor=np.frombuffer(bytes.fromhex(data["descriptor"]), dtype=np.uint8),
        observation_count=int(data["observation_count"]),
    )


def _parse_keyframe(data: dict) -> Keyframe:
    descriptors = _decode_descriptors(data["descriptors"])
    keyframe = Keyframe(
        id=int(data["id"]),
        timestamp_ns=int(data["timestamp_ns"]),
        pose=SE3.from_matrix(np.array(data["pose"], dtype=np.float64)),
        keypoints_left=np.array(data["keypoints_left"], dtype=np.float64),
        keypoints_right=np.array(data["keypoints_right"], dtype=np.float64),
        descriptors=descriptors,
        landmark_ids=np.array(data["landmark_ids"], dtype=np.int64),
        points_camera=np.array(data["points_camera"], dtype=np.float64),
    )
    n = len(keyframe.landmark_ids)
    if not (
        len(keyframe.keypoints_left)
        == len(keyframe.keypoints_right)
        == len(keyframe.descriptors)
        == len(keyframe.points_camera)
        == n
    ):
        raise ValueError(f"keyframe {keyframe.id} has inconsistent array lengths")
    return keyframe


def load_map(
    path: str | Path,
    calibration: StereoCalibration,
    frozen: bool = True,
    config: MapConfig | None = None,
    maintenance: MaintenanceConfig | None = None,
) -> MapHandle:
    """Load a map saved by ``save_map``.

    Args:
        path: Map file
        calibration: Calibration of the device that will use the map
        frozen: If True (tracking) the returned handle refuses writers
        config: Association and keyframe policy for further growth
        maintenance: Bundle adjustment settings for further growth

    Returns:
        MapHandle over the restored store

    Raises:
        MissingFileError: If the file doesn't exist
        CorruptMapError: If the file can't be parsed, has missing keys,
            dangling landmark references, or was built with a different
            calibration
    """
    path = Path(path)
    if not path.exists():
        raise MissingFileError(f"Map file not found: {path}")

    try:
        with open(path, "r") as f:
            document = json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise CorruptMapError(f"Cannot parse map file {path}: {e}") from e

    if not isinstance(document, dict) or document.get("format") != MAP_FORMAT:
        raise CorruptMapError(f"Not a map file: {path}")
    if document.get("version") != MAP_VERSION:
        raise CorruptMapError(
            f"Unsupported map version {document.get('version')} in {path}"
        )
    if document.get("calibration") != calibration.fingerprint():
        raise CorruptMapError(f"Map {path} was built with a different calibration")

    try:
        vocabulary = VisualVocabulary.from_dict(document["vocabulary"], source=str(path))
        landmarks = [_parse_landmark(item) for item in document["landmarks"]]
        keyframes = [_parse_keyframe(item) for item in document["keyframes"]]
    except (KeyError, TypeError, ValueError, VocabularyError) as e:
        raise CorruptMapError(f"Malformed map file {path}: {e}") from e

    store = MapStore(calibration, vocabulary, config, maintenance)
    store.restore(landmarks, keyframes)

    logger.info(
        "Loaded map from %s (%d landmarks, %d keyframes)",
        path,
        len(landmarks),
        len(keyframes),
    )
    return MapHandle(store, frozen=frozen)
