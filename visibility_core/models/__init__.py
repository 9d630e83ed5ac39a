from visibility_core.models.extraction_job import ExtractionJob
from visibility_core.models.tracked_entity import TrackedEntity
from visibility_core.models.visibility_analysis import VisibilityAnalysis

__all__ = [
    "ExtractionJob",
    "TrackedEntity",
    "VisibilityAnalysis",
]
