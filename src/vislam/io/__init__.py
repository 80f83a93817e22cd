"""I/O utilities for recorded sequences."""

from .sequence_reader import SequenceReader

__all__ = ["SequenceReader"]
