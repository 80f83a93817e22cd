"""Sparse landmark map, its keyframes and the single-writer handle.

The MapStore owns all landmarks and keyframes and guards them with a
re-entrant lock. Every read returns a copy taken under the lock, so a
reader sees a point-in-time snapshot that may be superseded as soon as
the call returns.

Callers never touch the store directly; they go through a MapHandle,
which exposes the reads to anyone and mediates writes through a single
claimed writer.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

import numpy as np

from ..config import MaintenanceConfig, MapConfig
from ..errors import CorruptMapError, MapAccessError
from ..estimator.matching import associate
from ..frontend.calibration import StereoCalibration
from ..frontend.pose import SE3
from ..frontend.triangulation import StereoObservation, stack_observations
from .bundle_adjustment import BAResult, StereoBundleAdjustment
from .covisibility import CovisibilityGraph
from .keyframe import Keyframe, KeyframePolicy
from .keyframe_database import PlaceDatabase
from .landmark import Landmark
from .maintenance import MapMaintenance
from .vocabulary import VisualVocabulary

logger = logging.getLogger(__name__)


@dataclass
class IntegrationResult:
    """Outcome of integrating one frame into the map.

    Attributes:
        num_associated: Observations matched to existing landmarks
        num_new: Landmarks created from unmatched observations
        keyframe_id: Id of the keyframe inserted, or None
    """

    num_associated: int = 0
    num_new: int = 0
    keyframe_id: int | None = None

    @property
    def num_integrated(self) -> int:
        """Return observations that contributed to the map."""
        return self.num_associated + self.num_new


class MapStore:
    """Landmarks, keyframes and the indices built over them."""

    def __init__(
        self,
        calibration: StereoCalibration,
        vocabulary: VisualVocabulary,
        config: MapConfig | None = None,
        maintenance: MaintenanceConfig | None = None,
    ) -> None:
        """Initialize an empty map.

        Args:
            calibration: Stereo calibration the map is built with
            vocabulary: Vocabulary for keyframe retrieval
            config: Association and keyframe policy
            maintenance: Bundle adjustment settings
        """
        self._calibration = calibration
        self._vocabulary = vocabulary
        self._config = config or MapConfig()
        self._maintenance_config = maintenance or MaintenanceConfig()

        self._lock = threading.RLock()
        self._landmarks: dict[int, Landmark] = {}
        self._keyframes: dict[int, Keyframe] = {}
        self._next_landmark_id = 0
        self._next_keyframe_id = 0

        self._policy = KeyframePolicy(
            min_translation=self._config.keyframe_min_translation,
            min_rotation=self._config.keyframe_min_rotation_deg,
            min_new_landmarks=self._config.keyframe_min_new_landmarks,
            min_observations=self._config.keyframe_min_observations,
        )
        self._database = PlaceDatabase(vocabulary)
        self._covisibility = CovisibilityGraph(self._maintenance_config.min_shared_points)
        self._bundle_adjustment = StereoBundleAdjustment(
            calibration,
            max_iterations=self._maintenance_config.max_iterations,
            loss=self._maintenance_config.loss,
            loss_scale=self._maintenance_config.loss_scale,
            min_observations=self._maintenance_config.min_observations,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def integrate(
        self,
        observations: list[StereoObservation],
        pose: SE3,
        timestamp_ns: int = 0,
    ) -> IntegrationResult:
        """Grow the map with one frame of observations.

        Each observation is associated with at most one landmark (see
        ``associate`` for the tie-break); each landmark takes at most one
        observation per frame. Associated landmarks have their observation
        count bumped; unassociated observations become new landmarks.

        Args:
            observations: Stereo observations of the frame
            pose: Device pose T_device_map at capture time
            timestamp_ns: Capture timestamp, stored on a new keyframe

        Returns:
            IntegrationResult summarizing the changes
        """
        if not observations:
            return IntegrationResult()

        pixels, u_right, points_camera, descriptors = stack_observations(observations)
        T_camera_map = self._calibration.T_camera_device.compose(pose)

        with self._lock:
            ids, positions, landmark_descriptors = self._landmark_arrays()
            matches = associate(
                pixels,
                descriptors,
                ids,
                positions,
                landmark_descriptors,
                T_camera_map,
                self._calibration,
                self._config.association_radius,
                self._config.association_max_distance,
            )

            landmark_ids = np.full(len(observations), -1, dtype=np.int64)
            landmark_ids[matches.observation_indices] = matches.landmark_ids
            for lm_id in matches.landmark_ids:
                self._landmarks[int(lm_id)].observation_count += 1

            unmatched = np.flatnonzero(landmark_ids < 0)
            points_map = T_camera_map.inverse().transform_points(points_camera[unmatched])
            for k, position in zip(unmatched, points_map):
                landmark_ids[k] = self._add_landmark(position, descriptors[k])

            result = IntegrationResult(num_associated=len(matches), num_new=len(unmatched))

            keyframe_poses = [kf.pose for kf in self._keyframes.values()]
            if self._policy.should_create_keyframe(
                pose, keyframe_poses, len(observations), len(unmatched)
            ):
                keyframe = Keyframe(
                    id=self._next_keyframe_id,
                    timestamp_ns=timestamp_ns,
                    pose=pose.copy(),
                    keypoints_left=pixels,
                    keypoints_right=np.column_stack([u_right, pixels[:, 1]]),
                    descriptors=descriptors,
                    landmark_ids=landmark_ids,
                    points_camera=points_camera,
                    bow=self._vocabulary.describe(descriptors),
                )
                self._insert_keyframe(keyframe)
                result.keyframe_id = keyframe.id

        logger.debug(
            "Integrated frame %d: %d associated, %d new, keyframe=%s",
            timestamp_ns,
            result.num_associated,
            result.num_new,
            result.keyframe_id,
        )
        return result

    def _add_landmark(self, position: np.ndarray, descriptor: np.ndarray) -> int:
        lm_id = self._next_landmark_id
        self._next_landmark_id += 1
        self._landmarks[lm_id] = Landmark(id=lm_id, position=position, descriptor=descriptor)
        return lm_id

    def _insert_keyframe(self, keyframe: Keyframe) -> None:
        self._keyframes[keyframe.id] = keyframe
        self._next_keyframe_id = max(self._next_keyframe_id, keyframe.id + 1)
        if len(keyframe.bow) != self._vocabulary.n_words:
            keyframe.bow = self._vocabulary.describe(keyframe.descriptors)
        self._database.add(keyframe.id, keyframe.bow)
        self._covisibility.add_keyframe(keyframe)

    def restore(self, landmarks: list[Landmark], keyframes: list[Keyframe]) -> None:
        """Populate an empty store with previously saved contents.

        Raises:
            CorruptMapError: If the store is not empty, ids repeat, or a
                keyframe references a missing landmark
        """
        with self._lock:
            if self._landmarks or self._keyframes:
                raise CorruptMapError("Cannot restore into a non-empty map")
            for landmark in landmarks:
                if landmark.id in self._landmarks:
                    raise CorruptMapError(f"Duplicate landmark id {landmark.id}")
                self._landmarks[landmark.id] = landmark
            self._next_landmark_id = max(self._landmarks, default=-1) + 1

            for keyframe in sorted(keyframes, key=lambda kf: kf.id):
                if keyframe.id in self._keyframes:
                    raise CorruptMapError(f"Duplicate keyframe id {keyframe.id}")
                self._insert_keyframe(keyframe)
            self.check_integrity()

    def run_maintenance(self, keyframe_id: int | None = None) -> BAResult | None:
        """Bundle-adjust the covisibility window of a keyframe.

        The window and its landmarks are copied under the lock, optimized
        without holding it, and the results are applied under the lock in
        one step.

        Args:
            keyframe_id: Window center; defaults to the newest keyframe

        Returns:
            BAResult, or None if there is nothing to optimize
        """
        with self._lock:
            if not self._keyframes:
                return None
            if keyframe_id is None or keyframe_id not in self._keyframes:
                keyframe_id = max(self._keyframes)
            window_size = self._maintenance_config.window_size
            window_ids = self._covisibility.get_local_keyframes(keyframe_id, window_size)
            if len(window_ids) < 2:
                # Fall back to the most recent keyframes
                window_ids = sorted(self._keyframes)[-window_size:]
            window = [self._keyframes[i].copy() for i in sorted(window_ids)]
            landmark_ids = set().union(*(kf.observed_landmark_ids() for kf in window))
            positions = {
                lm_id: self._landmarks[lm_id].position.copy() for lm_id in landmark_ids
            }

        result = self._bundle_adjustment.optimize(window, positions)
        if result.success:
            self.apply_corrections(result)
            logger.debug(
                "Maintenance over %d keyframes: cost %.3g -> %.3g",
                len(window),
                result.initial_cost,
                result.final_cost,
            )
        else:
            logger.debug("Maintenance skipped: %s", result.message)
        return result

    def apply_corrections(self, result: BAResult) -> None:
        """Rewrite keyframe poses and landmark positions in place."""
        with self._lock:
            for kf_id, pose in result.optimized_poses.items():
                if kf_id in self._keyframes:
                    self._keyframes[kf_id].pose = pose.copy()
            for lm_id, position in result.optimized_points.items():
                if lm_id in self._landmarks:
                    self._landmarks[lm_id].position = np.asarray(position, dtype=np.float64)

    # ------------------------------------------------------------------
    # Reads (copies)
    # ------------------------------------------------------------------

    def _landmark_arrays(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        ids = np.array(sorted(self._landmarks), dtype=np.int64)
        if len(ids) == 0:
            return ids, np.empty((0, 3)), np.empty((0, 32), dtype=np.uint8)
        positions = np.array([self._landmarks[i].position for i in ids], dtype=np.float64)
        descriptors = np.array([self._landmarks[i].descriptor for i in ids], dtype=np.uint8)
        return ids, positions, descriptors

    def landmark_snapshot(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Return (ids (N,), positions (N, 3), descriptors (N, 32)), by id."""
        with self._lock:
            return self._landmark_arrays()

    def landmark_positions(self, landmark_ids: np.ndarray) -> np.ndarray:
        """Return positions (K, 3) of the given landmarks.

        Raises:
            KeyError: If a landmark id does not exist
        """
        with self._lock:
            return np.array(
                [self._landmarks[int(i)].position for i in landmark_ids], dtype=np.float64
            ).reshape(-1, 3)

    def points(self) -> np.ndarray:
        """Return all landmark positions (N, 3), ordered by landmark id."""
        with self._lock:
            return self._landmark_arrays()[1]

    def query_candidates(self, descriptors: np.ndarray, n: int = 3) -> list[Keyframe]:
        """Return up to n keyframes ranked by BoW similarity to descriptors."""
        with self._lock:
            results = self._database.query(
                descriptors, n_candidates=n, min_score=self._config.candidate_min_score
            )
            return [self._keyframes[r.keyframe_id].copy() for r in results]

    def get_landmark(self, landmark_id: int) -> Landmark | None:
        """Return a copy of a landmark, or None."""
        with self._lock:
            landmark = self._landmarks.get(landmark_id)
            return landmark.copy() if landmark is not None else None

    def get_keyframe(self, keyframe_id: int) -> Keyframe | None:
        """Return a copy of a keyframe, or None."""
        with self._lock:
            keyframe = self._keyframes.get(keyframe_id)
            return keyframe.copy() if keyframe is not None else None

    def landmarks(self) -> list[Landmark]:
        """Return copies of all landmarks, ordered by id."""
        with self._lock:
            return [self._landmarks[i].copy() for i in sorted(self._landmarks)]

    def keyframes(self) -> list[Keyframe]:
        """Return copies of all keyframes, ordered by id."""
        with self._lock:
            return [self._keyframes[i].copy() for i in sorted(self._keyframes)]

    def snapshot(self) -> tuple[list[Landmark], list[Keyframe]]:
        """Return consistent copies of all landmarks and keyframes.

        Both lists are taken under one lock acquisition, so every keyframe
        reference resolves within the returned landmarks.
        """
        with self._lock:
            return self.landmarks(), self.keyframes()

    def check_integrity(self) -> None:
        """Verify every keyframe reference resolves to a landmark.

        Raises:
            CorruptMapError: On a dangling landmark reference
        """
        with self._lock:
            for keyframe in self._keyframes.values():
                missing = keyframe.observed_landmark_ids() - self._landmarks.keys()
                if missing:
                    raise CorruptMapError(
                        f"Keyframe {keyframe.id} references missing landmarks "
                        f"{sorted(missing)[:5]}"
                    )

    @property
    def num_landmarks(self) -> int:
        """Return number of landmarks."""
        with self._lock:
            return len(self._landmarks)

    @property
    def num_keyframes(self) -> int:
        """Return number of keyframes."""
        with self._lock:
            return len(self._keyframes)

    @property
    def is_empty(self) -> bool:
        """True when the map has no landmarks."""
        with self._lock:
            return not self._landmarks

    @property
    def calibration(self) -> StereoCalibration:
        """Return the calibration the map was built with."""
        return self._calibration

    @property
    def vocabulary(self) -> VisualVocabulary:
        """Return the retrieval vocabulary."""
        return self._vocabulary

    @property
    def maintenance_config(self) -> MaintenanceConfig:
        """Return the bundle adjustment settings."""
        return self._maintenance_config


class MapHandle:
    """Caller-visible handle over a MapStore.

    Reads are open to anyone. Writes require the caller to first claim
    the writer role; a frozen (loaded) map refuses writers entirely.
    When background maintenance is enabled the handle owns the worker
    thread; call ``close()`` (or use the handle as a context manager)
    to stop it.
    """

    def __init__(self, store: MapStore, frozen: bool = False) -> None:
        """Initialize the handle.

        Args:
            store: The map store to wrap
            frozen: If True the map can never be written
        """
        self._store = store
        self._frozen = frozen
        self._writer: object | None = None
        self._writer_lock = threading.Lock()
        self._maintenance: MapMaintenance | None = None

        config = store.maintenance_config
        if config.background and not frozen:
            self._maintenance = MapMaintenance(store)
            self._maintenance.start()

    # Writer discipline ---------------------------------------------------

    def claim_writer(self, owner: object) -> None:
        """Make ``owner`` the single writer.

        Re-claiming by the current writer is a no-op.

        Raises:
            MapAccessError: If the map is frozen or another writer holds it
        """
        with self._writer_lock:
            if self._frozen:
                raise MapAccessError("Map is frozen (loaded for tracking); writes refused")
            if self._writer is not None and self._writer is not owner:
                raise MapAccessError("Map already has an active writer")
            self._writer = owner

    def release_writer(self, owner: object) -> None:
        """Give up the writer role if ``owner`` holds it."""
        with self._writer_lock:
            if self._writer is owner:
                self._writer = None

    def integrate(
        self,
        observations: list[StereoObservation],
        pose: SE3,
        owner: object,
        timestamp_ns: int = 0,
    ) -> IntegrationResult:
        """Integrate a frame on behalf of the claimed writer.

        Raises:
            MapAccessError: If ``owner`` is not the active writer
        """
        with self._writer_lock:
            if self._frozen or self._writer is not owner:
                raise MapAccessError("Only the active writer may integrate")
        result = self._store.integrate(observations, pose, timestamp_ns)
        if result.keyframe_id is not None and self._maintenance is not None:
            self._maintenance.request(result.keyframe_id)
        return result

    def run_maintenance(self) -> BAResult | None:
        """Run one foreground maintenance pass on the newest keyframe.

        Raises:
            MapAccessError: If the map is frozen
        """
        if self._frozen:
            raise MapAccessError("Map is frozen (loaded for tracking); writes refused")
        return self._store.run_maintenance()

    # Reads ---------------------------------------------------------------

    def points(self) -> np.ndarray:
        """Return a snapshot of all landmark positions (N, 3)."""
        return self._store.points()

    def query_candidates(self, descriptors: np.ndarray, n: int = 3) -> list[Keyframe]:
        """Return up to n keyframes ranked by similarity."""
        return self._store.query_candidates(descriptors, n)

    def landmark_snapshot(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Return (ids, positions, descriptors) of all landmarks."""
        return self._store.landmark_snapshot()

    def landmark_positions(self, landmark_ids: np.ndarray) -> np.ndarray:
        """Return positions of the given landmarks."""
        return self._store.landmark_positions(landmark_ids)

    def get_landmark(self, landmark_id: int) -> Landmark | None:
        """Return a copy of a landmark, or None."""
        return self._store.get_landmark(landmark_id)

    def get_keyframe(self, keyframe_id: int) -> Keyframe | None:
        """Return a copy of a keyframe, or None."""
        return self._store.get_keyframe(keyframe_id)

    def landmarks(self) -> list[Landmark]:
        """Return copies of all landmarks."""
        return self._store.landmarks()

    def keyframes(self) -> list[Keyframe]:
        """Return copies of all keyframes."""
        return self._store.keyframes()

    def snapshot(self) -> tuple[list[Landmark], list[Keyframe]]:
        """Return consistent copies of all landmarks and keyframes."""
        return self._store.snapshot()

    @property
    def num_landmarks(self) -> int:
        """Return number of landmarks."""
        return self._store.num_landmarks

    @property
    def num_keyframes(self) -> int:
        """Return number of keyframes."""
        return self._store.num_keyframes

    @property
    def is_empty(self) -> bool:
        """True when the map has no landmarks."""
        return self._store.is_empty

    @property
    def is_frozen(self) -> bool:
        """True when the map refuses writers."""
        return self._frozen

    @property
    def has_writer(self) -> bool:
        """True while a writer holds the map."""
        return self._writer is not None

    @property
    def calibration(self) -> StereoCalibration:
        """Return the calibration the map was built with."""
        return self._store.calibration

    @property
    def vocabulary(self) -> VisualVocabulary:
        """Return the retrieval vocabulary."""
        return self._store.vocabulary

    @property
    def store(self) -> MapStore:
        """Return the underlying store (for persistence)."""
        return self._store

    # Lifecycle -----------------------------------------------------------

    def wait_for_maintenance(self, timeout: float | None = None) -> bool:
        """Block until queued maintenance requests are processed.

        Returns:
            False if ``timeout`` expired with requests still pending
        """
        if self._maintenance is None:
            return True
        return self._maintenance.wait_idle(timeout)

    def close(self) -> None:
        """Stop background maintenance, if any."""
        if self._maintenance is not None:
            self._maintenance.stop()
            self._maintenance = None

    def __enter__(self) -> MapHandle:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def create_empty(
    calibration: StereoCalibration,
    vocabulary: VisualVocabulary,
    config: MapConfig | None = None,
    maintenance: MaintenanceConfig | None = None,
) -> MapHandle:
    """Create a writable, empty map.

    Args:
        calibration: Stereo calibration of the device
        vocabulary: Vocabulary for keyframe retrieval
        config: Association and keyframe policy
        maintenance: Bundle adjustment settings (background thread if
            ``maintenance.background``)

    Returns:
        MapHandle over an empty store
    """
    return MapHandle(MapStore(calibration, vocabulary, config, maintenance))
