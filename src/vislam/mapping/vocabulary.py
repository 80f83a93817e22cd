"""Visual vocabulary for Bag of Visual Words keyframe retrieval.

A visual vocabulary enables fast image similarity comparison by:
1. Clustering descriptors into "visual words" (k-means centers)
2. Representing images as histograms of visual word occurrences
3. Comparing images via histogram similarity (cosine distance)

The vocabulary is trained offline (see ``VisualVocabulary.train``) and
supplied when a map is created; it is then embedded in saved maps.
"""

from __future__ import annotations

import json
import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from sklearn.cluster import MiniBatchKMeans

from ..errors import MissingFileError, VocabularyError
from ..frontend.feature_detector import DESCRIPTOR_BYTES

logger = logging.getLogger(__name__)


@dataclass
class VisualVocabulary:
    """Bag of Visual Words vocabulary for ORB descriptors.

    Attributes:
        words: Cluster centers (visual words), shape (n_words, 32)
        n_words: Number of visual words in vocabulary
        idf: Inverse document frequency weights, shape (n_words,)
    """

    words: np.ndarray  # (n_words, 32) float32 cluster centers
    n_words: int
    idf: np.ndarray  # (n_words,) IDF weights

    def __post_init__(self) -> None:
        """Validate shapes."""
        self.words = np.asarray(self.words, dtype=np.float32)
        self.idf = np.asarray(self.idf, dtype=np.float32).flatten()
        if self.words.ndim != 2 or self.words.shape[1] != DESCRIPTOR_BYTES:
            raise VocabularyError(
                f"Vocabulary words must be (n, {DESCRIPTOR_BYTES}), got {self.words.shape}"
            )
        if len(self.words) == 0:
            raise VocabularyError("Vocabulary has no words")
        if self.idf.shape != (len(self.words),):
            raise VocabularyError(
                f"IDF weights must have one entry per word, got {self.idf.shape}"
            )
        self.n_words = len(self.words)
        self._word_norms = np.sum(self.words**2, axis=1)  # (n_words,)

    def assign(self, descriptors: np.ndarray) -> np.ndarray:
        """Return the nearest word index for each descriptor (N,)."""
        descriptors_float = np.asarray(descriptors, dtype=np.float32)
        # ||d - w||² = ||d||² - 2 d·w + ||w||², the ||d||² term is constant per row
        distances = self._word_norms[np.newaxis, :] - 2.0 * descriptors_float @ self.words.T
        return np.argmin(distances, axis=1)

    def describe(self, descriptors: np.ndarray | None) -> np.ndarray:
        """Convert image descriptors to a Bag of Words vector.

        Args:
            descriptors: ORB descriptors, shape (N, 32) uint8

        Returns:
            BoW vector, shape (n_words,), L2 normalized with TF-IDF weighting
        """
        if descriptors is None or len(descriptors) == 0:
            return np.zeros(self.n_words, dtype=np.float32)

        histogram = np.bincount(self.assign(descriptors), minlength=self.n_words)
        tfidf = histogram.astype(np.float32) * self.idf

        # L2 normalize for cosine similarity
        norm = np.linalg.norm(tfidf)
        if norm > 0:
            tfidf = tfidf / norm
        return tfidf

    def similarity(self, bow1: np.ndarray, bow2: np.ndarray) -> float:
        """Compute cosine similarity between two normalized BoW vectors."""
        return float(np.dot(bow1, bow2))

    def to_dict(self) -> dict:
        """Return a JSON-serializable mapping."""
        return {"words": self.words.tolist(), "idf": self.idf.tolist()}

    @classmethod
    def from_dict(cls, data: dict, source: str = "<dict>") -> VisualVocabulary:
        """Build from a mapping with ``words`` and ``idf``.

        Raises:
            VocabularyError: If keys are missing or malformed
        """
        if not isinstance(data, dict) or "words" not in data:
            raise VocabularyError(f"Vocabulary is missing 'words': {source}")
        try:
            words = np.asarray(data["words"], dtype=np.float32)
            idf = (
                np.asarray(data["idf"], dtype=np.float32)
                if data.get("idf") is not None
                else np.ones(len(words), dtype=np.float32)
            )
        except (TypeError, ValueError) as e:
            raise VocabularyError(f"Malformed vocabulary {source}: {e}") from e
        return cls(words=words, n_words=len(words), idf=idf)

    def save(self, path: str | Path) -> None:
        """Save vocabulary to a .npz or .json file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.suffix == ".json":
            with open(path, "w") as f:
                json.dump(self.to_dict(), f)
            return
        np.savez(path, words=self.words, n_words=self.n_words, idf=self.idf)

    @classmethod
    def load(cls, path: str | Path) -> VisualVocabulary:
        """Load vocabulary from a .npz or .json file.

        Raises:
            MissingFileError: If the file doesn't exist
            VocabularyError: If the file can't be parsed or is incomplete
        """
        path = Path(path)
        if not path.exists():
            raise MissingFileError(f"Vocabulary file not found: {path}")

        if path.suffix == ".json":
            try:
                with open(path, "r") as f:
                    data = json.load(f)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise VocabularyError(f"Cannot parse vocabulary {path}: {e}") from e
            return cls.from_dict(data, source=str(path))

        try:
            with np.load(path) as data:
                return cls.from_dict(
                    {
                        "words": data["words"],
                        "idf": data["idf"] if "idf" in data.files else None,
                    },
                    source=str(path),
                )
        except (KeyError, OSError, ValueError, zipfile.BadZipFile) as e:
            raise VocabularyError(f"Cannot read vocabulary {path}: {e}") from e

    @classmethod
    def from_words(cls, words: np.ndarray) -> VisualVocabulary:
        """Create vocabulary from cluster centers with uniform IDF."""
        n_words = len(words)
        return cls(
            words=np.asarray(words, dtype=np.float32),
            n_words=n_words,
            idf=np.ones(n_words, dtype=np.float32),
        )

    @classmethod
    def train(
        cls,
        descriptors: np.ndarray,
        n_words: int,
        batch_size: int = 10000,
        max_iter: int = 100,
        random_state: int = 42,
    ) -> VisualVocabulary:
        """Train a vocabulary with mini-batch k-means.

        IDF weights are computed treating each descriptor as its own
        document, which down-weights words that absorb many descriptors.

        Args:
            descriptors: Stacked descriptors, shape (N, 32)
            n_words: Number of visual words (clusters)
            batch_size: Mini-batch size for k-means
            max_iter: Maximum iterations
            random_state: Seed for reproducible clustering

        Returns:
            Trained vocabulary

        Raises:
            VocabularyError: If there are fewer descriptors than words
        """
        if len(descriptors) < n_words:
            raise VocabularyError(
                f"Need at least {n_words} descriptors to train, got {len(descriptors)}"
            )

        kmeans = MiniBatchKMeans(
            n_clusters=n_words,
            random_state=random_state,
            batch_size=batch_size,
            n_init="auto",
            max_iter=max_iter,
        )
        kmeans.fit(np.asarray(descriptors, dtype=np.float32))
        logger.info(
            "Trained %d words from %d descriptors (inertia %.2e)",
            n_words,
            len(descriptors),
            kmeans.inertia_,
        )

        vocabulary = cls.from_words(kmeans.cluster_centers_)
        counts = np.bincount(vocabulary.assign(descriptors), minlength=n_words)
        vocabulary.update_idf(counts, len(descriptors))
        return vocabulary

    def update_idf(self, document_frequencies: np.ndarray, n_documents: int) -> None:
        """Update IDF weights: IDF(word) = log(N / df(word))."""
        # Avoid division by zero with smoothing
        df_smoothed = np.maximum(document_frequencies, 1)
        self.idf = np.log(n_documents / df_smoothed).astype(np.float32)
