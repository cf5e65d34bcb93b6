"""
Error taxonomy for the luckystack pipeline.

Per-frame problems (decode, alignment) are recoverable and are absorbed by
the stage that meets them. Pipeline-fatal problems abort the orchestrator,
which converts them into an explicit outcome at the public boundary.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(Enum):
    """Kinds of failure surfaced by the pipeline."""

    INVALID_INPUT = "invalid_input"  # Missing source/params, bad values
    DECODE_FAILURE = "decode_failure"  # Single frame unreadable (recoverable)
    ALIGNMENT_FAILURE = "alignment_failure"  # Low-confidence correlation (recoverable)
    INSUFFICIENT_FRAMES = "insufficient_frames"  # Too few usable frames left
    NUMERIC_FAILURE = "numeric_failure"  # Degenerate statistics on malformed input
    CANCELLED = "cancelled"  # User-requested stop
    INTERNAL = "internal"  # Anything unexpected


class LuckyStackError(Exception):
    """Base class for pipeline errors."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, original_error: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class InvalidInputError(LuckyStackError, ValueError):
    """Missing or invalid source, sink or parameters."""

    kind = ErrorKind.INVALID_INPUT


class DecodeError(LuckyStackError):
    """A single frame could not be decoded."""

    kind = ErrorKind.DECODE_FAILURE

    def __init__(self, index: int, message: str, original_error: Exception | None = None):
        super().__init__(f"Frame {index}: {message}", original_error)
        self.index = index


class AlignmentError(LuckyStackError):
    """Correlation confidence too low to trust a frame's registration."""

    kind = ErrorKind.ALIGNMENT_FAILURE


class InsufficientFramesError(LuckyStackError):
    """Fewer usable frames than the pipeline minimum."""

    kind = ErrorKind.INSUFFICIENT_FRAMES


class NumericError(LuckyStackError):
    """Statistics that cannot be computed from the given input."""

    kind = ErrorKind.NUMERIC_FAILURE


class PipelineCancelled(LuckyStackError):
    """Raised inside workers once the cancellation token is set."""

    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "Processing cancelled"):
        super().__init__(message)
