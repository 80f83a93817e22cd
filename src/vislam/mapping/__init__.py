"""Sparse landmark map: storage, retrieval, maintenance and persistence."""

from .bundle_adjustment import BAResult, StereoBundleAdjustment
from .covisibility import CovisibilityGraph
from .keyframe import Keyframe, KeyframePolicy
from .keyframe_database import PlaceDatabase, QueryResult
from .landmark import Landmark
from .maintenance import MapMaintenance
from .map_store import IntegrationResult, MapHandle, MapStore, create_empty
from .persistence import load_map, save_map
from .vocabulary import VisualVocabulary

__all__ = [
    "BAResult",
    "CovisibilityGraph",
    "IntegrationResult",
    "Keyframe",
    "KeyframePolicy",
    "Landmark",
    "MapHandle",
    "MapMaintenance",
    "MapStore",
    "PlaceDatabase",
    "QueryResult",
    "StereoBundleAdjustment",
    "VisualVocabulary",
    "create_empty",
    "load_map",
    "save_map",
]
