"""Exception hierarchy for the SLAM engine.

Per-sample problems (bad stereo pairs, failed matches, rejected
triangulations) are never raised; they only shrink the observation set.
Everything below is structural and surfaces to the caller.
"""

from __future__ import annotations


class VislamError(Exception):
    """Base class for all engine errors."""


class InitializationError(VislamError):
    """Bad or missing calibration, vocabulary, or map file."""


class CalibrationError(InitializationError, ValueError):
    """Calibration file is malformed or incomplete."""


class VocabularyError(InitializationError, ValueError):
    """Vocabulary file is malformed or incomplete."""


class MissingFileError(InitializationError, FileNotFoundError):
    """A required input file does not exist."""


class CorruptMapError(InitializationError, ValueError):
    """Map file cannot be parsed or violates map invariants."""


class PersistenceError(VislamError):
    """I/O failure while persisting a map."""


class MapWriteError(PersistenceError, OSError):
    """Map file could not be written."""


class MapAccessError(VislamError, RuntimeError):
    """Single-writer discipline was violated on a map handle."""


class MapIntegrationFailure(VislamError):
    """The map could not be grown for a sustained span of frames.

    Attributes:
        frames_without_integration: Consecutive stereo frames that
            contributed nothing to the map
    """

    def __init__(self, message: str, frames_without_integration: int) -> None:
        super().__init__(message)
        self.frames_without_integration = frames_without_integration
