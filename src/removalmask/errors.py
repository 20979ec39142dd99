"""
Error taxonomy for removalmask.

Only contract violations (InvalidDimensions) propagate to callers.
Model-facing failures are converted to fallbacks or soft errors at the
adapter and coordinator boundaries.
"""


class RemovalMaskError(Exception):
    """Base class for all removalmask errors."""


class InvalidDimensions(RemovalMaskError, ValueError):
    """Raised when a mask is requested with zero or negative size."""

    def __init__(self, width, height):
        super().__init__(f"Invalid mask dimensions: {width}x{height}")
        self.width = width
        self.height = height


class SegmentationFailure(RemovalMaskError):
    """The segmentation capability failed or returned unusable output."""


class ApplyFailure(RemovalMaskError):
    """The inpainting capability failed to produce an image."""


class CancelledOperation(RemovalMaskError):
    """A refine or apply operation was superseded by newer input."""
