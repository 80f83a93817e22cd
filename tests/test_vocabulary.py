"""Tests for the visual vocabulary and the keyframe place database."""

import numpy as np
import pytest

from vislam.errors import MissingFileError, VocabularyError
from vislam.mapping import PlaceDatabase, VisualVocabulary


class TestVisualVocabulary:
    """Test suite for VisualVocabulary."""

    def test_from_words(self, vocabulary: VisualVocabulary):
        """Test uniform IDF weights."""
        assert vocabulary.n_words == 16
        np.testing.assert_array_equal(vocabulary.idf, np.ones(16))

    def test_describe_is_normalized(self, vocabulary: VisualVocabulary):
        """Test that BoW vectors have unit length."""
        rng = np.random.default_rng(0)
        bow = vocabulary.describe(rng.integers(0, 256, (100, 32), dtype=np.uint8))

        assert bow.shape == (16,)
        assert np.linalg.norm(bow) == pytest.approx(1.0)
        assert vocabulary.similarity(bow, bow) == pytest.approx(1.0)

    def test_describe_empty(self, vocabulary: VisualVocabulary):
        """Test that no descriptors give a zero vector."""
        np.testing.assert_array_equal(vocabulary.describe(None), np.zeros(16))
        np.testing.assert_array_equal(vocabulary.describe(np.empty((0, 32))), np.zeros(16))

    def test_assign_nearest_word(self, vocabulary: VisualVocabulary):
        """Test that a word is assigned to itself."""
        words = vocabulary.words.astype(np.uint8)
        np.testing.assert_array_equal(vocabulary.assign(words), np.arange(16))

    @pytest.mark.parametrize("filename", ["vocabulary.npz", "vocabulary.json"])
    def test_save_load(self, tmp_path, vocabulary: VisualVocabulary, filename):
        """Test saving and loading in both formats."""
        vocabulary.idf = np.linspace(0.5, 2.0, 16).astype(np.float32)
        path = tmp_path / "nested" / filename

        vocabulary.save(path)
        loaded = VisualVocabulary.load(path)

        np.testing.assert_array_equal(loaded.words, vocabulary.words)
        np.testing.assert_allclose(loaded.idf, vocabulary.idf)

    def test_load_missing(self, tmp_path):
        """Test loading a file that doesn't exist."""
        with pytest.raises(MissingFileError, match="Vocabulary file not found"):
            VisualVocabulary.load(tmp_path / "missing.npz")

    def test_load_malformed_json(self, tmp_path):
        """Test loading a file that isn't JSON."""
        path = tmp_path / "vocabulary.json"
        path.write_text("{not json")

        with pytest.raises(VocabularyError, match="Cannot parse vocabulary"):
            VisualVocabulary.load(path)

    def test_load_without_words(self, tmp_path):
        """Test loading JSON without the words key."""
        path = tmp_path / "vocabulary.json"
        path.write_text('{"idf": [1.0]}')

        with pytest.raises(VocabularyError, match="missing 'words'"):
            VisualVocabulary.load(path)

    def test_wrong_word_shape(self):
        """Test that words must be 32 bytes wide."""
        with pytest.raises(VocabularyError, match="must be"):
            VisualVocabulary.from_words(np.zeros((4, 16)))

    def test_idf_length_mismatch(self):
        """Test that there is one IDF weight per word."""
        with pytest.raises(VocabularyError, match="one entry per word"):
            VisualVocabulary(words=np.zeros((4, 32)), n_words=4, idf=np.ones(3))

    def test_train(self):
        """Test clustering descriptors drawn around a few centers."""
        rng = np.random.default_rng(5)
        centers = rng.integers(0, 256, (4, 32))
        labels = rng.integers(0, 4, 400)
        descriptors = np.clip(centers[labels] + rng.integers(-3, 4, (400, 32)), 0, 255)

        vocabulary = VisualVocabulary.train(descriptors.astype(np.uint8), n_words=4)

        assert vocabulary.n_words == 4
        assigned = vocabulary.assign(descriptors)
        # Each cluster maps to a single word
        for label in range(4):
            assert len(set(assigned[labels == label].tolist())) == 1
        assert np.all(vocabulary.idf > 0)

    def test_train_too_few_descriptors(self):
        """Test that training needs at least one descriptor per word."""
        with pytest.raises(VocabularyError, match="Need at least 8 descriptors"):
            VisualVocabulary.train(np.zeros((4, 32), dtype=np.uint8), n_words=8)


class TestPlaceDatabase:
    """Test suite for PlaceDatabase."""

    def test_empty(self, vocabulary: VisualVocabulary):
        """Test querying an empty database."""
        database = PlaceDatabase(vocabulary)
        assert database.query(np.zeros((5, 32), dtype=np.uint8)) == []
        assert len(database) == 0

    def test_ranks_by_similarity(self, vocabulary: VisualVocabulary):
        """Test that the most similar keyframe comes first."""
        rng = np.random.default_rng(1)
        first = rng.integers(0, 256, (50, 32), dtype=np.uint8)
        second = vocabulary.words[:2].astype(np.uint8).repeat(25, axis=0)
        database = PlaceDatabase(vocabulary)
        database.add(0, vocabulary.describe(first))
        database.add(1, vocabulary.describe(second))

        results = database.query(second, n_candidates=2)

        assert [r.keyframe_id for r in results] == [1, 0]
        assert results[0].similarity == pytest.approx(1.0)

    def test_ties_break_by_lowest_id(self, vocabulary: VisualVocabulary):
        """Test that equal scores are ordered by keyframe id."""
        descriptors = vocabulary.words[:3].astype(np.uint8)
        bow = vocabulary.describe(descriptors)
        database = PlaceDatabase(vocabulary)
        for kf_id in (7, 3, 5):
            database.add(kf_id, bow)

        results = database.query(descriptors, n_candidates=2)

        assert [r.keyframe_id for r in results] == [3, 5]

    def test_min_score(self, vocabulary: VisualVocabulary):
        """Test that candidates below the score threshold are dropped."""
        database = PlaceDatabase(vocabulary)
        database.add(0, vocabulary.describe(vocabulary.words[:1].astype(np.uint8)))

        results = database.query(
            vocabulary.words[1:2].astype(np.uint8), n_candidates=5, min_score=0.5
        )

        assert results == []
