"""Exception hierarchy shared across the capture pipeline."""

from __future__ import annotations


class SentinelError(RuntimeError):
    """Base class for all sentinel-kb errors."""


class CaptureNotFoundError(SentinelError):
    """Raised when a capture id does not exist in the store."""


class CaptureStateError(SentinelError):
    """Raised when an operation is not allowed in the capture's current status."""


class EmbeddingDimensionError(SentinelError, ValueError):
    """Raised when a vector does not match the configured embedding dimension."""


class BackendError(SentinelError):
    """Raised by extraction/embedding clients; always converted to a fallback."""


class PipelineError(SentinelError):
    """Raised for a failed processing attempt that the caller will retry."""


class ProcessingTimeoutError(PipelineError, TimeoutError):
    """Raised when a capture exceeds its per-item processing deadline."""


class QueueClosedError(SentinelError):
    """Raised when enqueueing onto a queue that has been shut down."""


class QueueFullError(SentinelError):
    """Raised when a bounded queue stays full past the enqueue timeout."""
