"""Keyframe retrieval database for relocalization.

Stores keyframe BoW representations and ranks them by similarity to the
descriptors of a query frame.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .vocabulary import VisualVocabulary


@dataclass
class QueryResult:
    """Result from a keyframe query.

    Attributes:
        keyframe_id: ID of the matching keyframe
        similarity: Cosine similarity score [0, 1]
    """

    keyframe_id: int
    similarity: float


class PlaceDatabase:
    """Database of keyframe BoW vectors for candidate queries.

    Stores one row per keyframe in a BoW matrix so that a query is a single
    matrix-vector product.
    """

    def __init__(self, vocabulary: VisualVocabulary) -> None:
        """Initialize place database.

        Args:
            vocabulary: Visual vocabulary for BoW conversion
        """
        self._vocabulary = vocabulary
        self._keyframe_ids: list[int] = []
        # BoW matrix for fast batch queries: (n_entries, n_words)
        self._bow_matrix = np.zeros((0, vocabulary.n_words), dtype=np.float32)

    def add(self, keyframe_id: int, bow_vector: np.ndarray) -> None:
        """Add a keyframe's BoW vector.

        Args:
            keyframe_id: Unique keyframe ID
            bow_vector: Normalized BoW vector, shape (n_words,)
        """
        self._keyframe_ids.append(keyframe_id)
        self._bow_matrix = np.vstack(
            [self._bow_matrix, np.asarray(bow_vector, dtype=np.float32).reshape(1, -1)]
        )

    def query(
        self,
        descriptors: np.ndarray,
        n_candidates: int = 5,
        min_score: float = 0.0,
    ) -> list[QueryResult]:
        """Query database for similar keyframes.

        Args:
            descriptors: Query ORB descriptors, shape (N, 32)
            n_candidates: Maximum number of candidates to return
            min_score: Minimum similarity score threshold

        Returns:
            List of QueryResults sorted by similarity (highest first),
            ties broken by lowest keyframe id
        """
        if len(self._keyframe_ids) == 0 or n_candidates <= 0:
            return []

        query_bow = self._vocabulary.describe(descriptors)
        similarities = self._bow_matrix @ query_bow  # (n_entries,)
        ids = np.array(self._keyframe_ids, dtype=np.int64)

        valid = np.flatnonzero(similarities >= min_score)
        if len(valid) == 0:
            return []

        order = valid[np.lexsort((ids[valid], -similarities[valid]))]
        return [
            QueryResult(keyframe_id=int(ids[i]), similarity=float(similarities[i]))
            for i in order[:n_candidates]
        ]

    @property
    def vocabulary(self) -> VisualVocabulary:
        """Return the vocabulary used for BoW conversion."""
        return self._vocabulary

    def __len__(self) -> int:
        """Return number of entries in database."""
        return len(self._keyframe_ids)
