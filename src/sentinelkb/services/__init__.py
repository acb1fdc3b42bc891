"""Service layer orchestrations for sentinel-kb."""

from .capture import CaptureService
from .pipeline import CapturePipeline, Deadline, ProcessingOutcome, ProcessingResult
from .search import SearchService

__all__ = [
    "CapturePipeline",
    "CaptureService",
    "Deadline",
    "ProcessingOutcome",
    "ProcessingResult",
    "SearchService",
]
