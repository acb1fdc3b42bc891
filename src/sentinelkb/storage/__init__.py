"""Capture persistence."""

from .base import CaptureStore
from .memory import InMemoryCaptureStore
from .sql import SqlCaptureStore, create_engine_from_url

__all__ = ["CaptureStore", "InMemoryCaptureStore", "SqlCaptureStore", "create_engine_from_url"]
