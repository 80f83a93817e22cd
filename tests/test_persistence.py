"""Tests for saving and loading maps."""

import json
import threading

import numpy as np
import pytest

from vislam.errors import CorruptMapError, MapAccessError, MapWriteError, MissingFileError
from vislam.frontend import SE3
from vislam.mapping import MapHandle, create_empty, load_map, save_map

from .conftest import SyntheticScene, device_pose, make_calibration


@pytest.fixture
def built_map(calibration, vocabulary, scene) -> MapHandle:
    """Map with two keyframes of the synthetic scene."""
    handle = create_empty(calibration, vocabulary)
    owner = object()
    handle.claim_writer(owner)
    handle.integrate(scene.observe(SE3.identity()), SE3.identity(), owner, 10)
    pose = device_pose(x=0.3)
    handle.integrate(scene.observe(pose), pose, owner, 20)
    handle.release_writer(owner)
    return handle


@pytest.fixture
def map_file(tmp_path, built_map):
    path = tmp_path / "map.json"
    save_map(path, built_map)
    return path


class TestSaveLoad:
    """Test suite for map round trips."""

    def test_round_trip(self, map_file, built_map, calibration):
        """Test that landmarks and keyframes survive a save and load."""
        loaded = load_map(map_file, calibration)

        assert loaded.num_landmarks == built_map.num_landmarks
        assert loaded.num_keyframes == built_map.num_keyframes == 2
        np.testing.assert_allclose(loaded.points(), built_map.points())
        for original, restored in zip(built_map.landmarks(), loaded.landmarks()):
            assert restored.id == original.id
            assert restored.observation_count == original.observation_count
            np.testing.assert_array_equal(restored.descriptor, original.descriptor)
        for original, restored in zip(built_map.keyframes(), loaded.keyframes()):
            assert restored.timestamp_ns == original.timestamp_ns
            np.testing.assert_allclose(restored.pose.to_matrix(), original.pose.to_matrix())
            np.testing.assert_array_equal(restored.landmark_ids, original.landmark_ids)
            np.testing.assert_array_equal(restored.descriptors, original.descriptors)

    def test_vocabulary_embedded(self, map_file, vocabulary, calibration):
        """Test that the vocabulary is restored from the map file."""
        loaded = load_map(map_file, calibration)

        np.testing.assert_array_equal(loaded.vocabulary.words, vocabulary.words)

    def test_retrieval_after_load(self, map_file, calibration, scene):
        """Test that restored keyframes can be retrieved by descriptors."""
        loaded = load_map(map_file, calibration)
        descriptors = np.array([o.descriptor for o in scene.observe(SE3.identity())])

        candidates = loaded.query_candidates(descriptors)

        assert 0 in [kf.id for kf in candidates]

    def test_loaded_map_is_frozen(self, map_file, calibration):
        """Test that a map loaded for tracking refuses writers."""
        loaded = load_map(map_file, calibration)

        assert loaded.is_frozen
        with pytest.raises(MapAccessError):
            loaded.claim_writer(object())

    def test_load_writable(self, map_file, calibration):
        """Test that an unfrozen load continues landmark ids."""
        loaded = load_map(map_file, calibration, frozen=False)
        last_id = loaded.landmarks()[-1].id
        owner = object()
        loaded.claim_writer(owner)

        unseen = SyntheticScene(calibration, seed=11).observe(SE3.identity())
        result = loaded.integrate(unseen, SE3.identity(), owner)

        ids = [lm.id for lm in loaded.landmarks()]
        new_ids = [i for i in ids if i > last_id]
        assert result.num_new == len(unseen) > 0
        assert len(ids) == len(set(ids))
        assert new_ids == list(range(last_id + 1, last_id + 1 + len(unseen)))

    def test_save_while_integrating(self, tmp_path, built_map, calibration, monkeypatch):
        """Test that a frame integrated during a save can't split the saved map."""
        store = built_map.store
        owner = object()
        built_map.claim_writer(owner)
        pose = device_pose(x=0.1)
        unseen = SyntheticScene(calibration, seed=11).observe(pose)
        writer = threading.Thread(
            target=built_map.integrate, args=(unseen, pose, owner, 30)
        )

        read_landmarks = store.landmarks

        def landmarks_then_write():
            landmarks = read_landmarks()
            writer.start()
            writer.join(timeout=0.5)
            return landmarks

        monkeypatch.setattr(store, "landmarks", landmarks_then_write)
        path = tmp_path / "map.json"
        save_map(path, built_map)
        writer.join()

        loaded = load_map(path, calibration)
        loaded.store.check_integrity()
        assert built_map.num_keyframes == 3
        assert loaded.num_keyframes == 2

    def test_overwrite(self, map_file, built_map, calibration):
        """Test that saving replaces an existing file without leftovers."""
        save_map(map_file, built_map)

        assert load_map(map_file, calibration).num_keyframes == 2
        assert [p.name for p in map_file.parent.iterdir()] == ["map.json"]


class TestLoadErrors:
    """Test suite for rejected map files."""

    def test_missing_file(self, tmp_path, calibration):
        """Test loading a map that doesn't exist."""
        with pytest.raises(MissingFileError, match="Map file not found"):
            load_map(tmp_path / "missing.json", calibration)

    def test_not_json(self, tmp_path, calibration):
        """Test loading a file that isn't JSON."""
        path = tmp_path / "map.json"
        path.write_text("not a map")

        with pytest.raises(CorruptMapError, match="Cannot parse map file"):
            load_map(path, calibration)

    def test_wrong_format(self, tmp_path, calibration):
        """Test loading JSON that isn't a map."""
        path = tmp_path / "map.json"
        path.write_text(json.dumps({"format": "something-else"}))

        with pytest.raises(CorruptMapError, match="Not a map file"):
            load_map(path, calibration)

    def test_wrong_version(self, map_file, calibration):
        """Test loading a map from a future version."""
        document = json.loads(map_file.read_text())
        document["version"] = 99
        map_file.write_text(json.dumps(document))

        with pytest.raises(CorruptMapError, match="Unsupported map version 99"):
            load_map(map_file, calibration)

    def test_calibration_mismatch(self, map_file):
        """Test that a map is bound to the calibration it was built with."""
        with pytest.raises(CorruptMapError, match="different calibration"):
            load_map(map_file, make_calibration(baseline=0.12))

    def test_dangling_landmark_reference(self, map_file, calibration):
        """Test that keyframes referencing removed landmarks are rejected."""
        document = json.loads(map_file.read_text())
        document["landmarks"] = document["landmarks"][1:]
        map_file.write_text(json.dumps(document))

        with pytest.raises(CorruptMapError, match="references missing landmarks"):
            load_map(map_file, calibration)

    def test_missing_key(self, map_file, calibration):
        """Test that a landmark without a position is rejected."""
        document = json.loads(map_file.read_text())
        del document["landmarks"][0]["position"]
        map_file.write_text(json.dumps(document))

        with pytest.raises(CorruptMapError, match="Malformed map file"):
            load_map(map_file, calibration)

    def test_inconsistent_keyframe(self, map_file, calibration):
        """Test that keyframe arrays must have matching lengths."""
        document = json.loads(map_file.read_text())
        document["keyframes"][0]["points_camera"].pop()
        map_file.write_text(json.dumps(document))

        with pytest.raises(CorruptMapError, match="inconsistent array lengths"):
            load_map(map_file, calibration)


class TestSaveErrors:
    """Test suite for failed saves."""

    def test_unwritable_path(self, tmp_path, built_map):
        """Test that a path below a regular file can't be written."""
        blocker = tmp_path / "blocker"
        blocker.write_text("")

        with pytest.raises(MapWriteError, match="Cannot write map"):
            save_map(blocker / "map.json", built_map)
