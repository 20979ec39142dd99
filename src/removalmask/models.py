"""
Pydantic data models and mask helpers for removalmask.

Strokes, prompts and validation results flow through these validated
models. Masks themselves are plain uint8 numpy arrays of shape
(height, width) holding 0 or 1.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator

from removalmask.errors import InvalidDimensions


class Phase(str, Enum):
    """Phase of an object-removal session."""
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    REFINING = "refining"
    READY_TO_APPLY = "ready_to_apply"
    APPLYING = "applying"


class PromptKind(str, Enum):
    """Kind of geometric prompt passed to a segmentation model."""
    POINT = "point"
    BOX = "box"


class Severity(str, Enum):
    """Severity levels for validation checks."""
    ERROR = "error"
    WARN = "warn"
    INFO = "info"


class Stroke(BaseModel):
    """A single recorded brush stroke in normalized image coordinates."""
    points: List[Tuple[float, float]] = Field(..., min_length=1)
    brush_radius: float = Field(..., gt=0)
    is_eraser: bool = False

    model_config = ConfigDict(extra="forbid", frozen=True)

    @field_validator("points")
    @classmethod
    def _points_normalized(cls, points):
        for x, y in points:
            if not (0.0 <= x <= 1.0 and 0.0 <= y <= 1.0):
                raise ValueError(f"Stroke point ({x}, {y}) is outside [0, 1]")
        return points


class BoundingBox(BaseModel):
    """Inclusive integer pixel bounds of the non-zero pixels of a mask."""
    min_x: int
    min_y: int
    max_x: int
    max_y: int

    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def width(self):
        return self.max_x - self.min_x + 1

    @property
    def height(self):
        return self.max_y - self.min_y + 1

    @property
    def center(self):
        """Integer midpoint of the box."""
        return ((self.min_x + self.max_x) // 2, (self.min_y + self.max_y) // 2)

    def contains(self, x, y):
        return self.min_x <= x <= self.max_x and self.min_y <= y <= self.max_y


class GeometricPrompt(BaseModel):
    """
    A point or box prompt in model input coordinates.

    source_bbox keeps the image-space bounds the prompt was derived from,
    so candidate masks can be scored against the marked region.
    """
    kind: PromptKind
    point: Optional[Tuple[float, float]] = None
    label: int = 1
    box: Optional[Tuple[float, float, float, float]] = None
    source_bbox: BoundingBox
    model_size: int = Field(..., gt=0)

    model_config = ConfigDict(extra="forbid", frozen=True)


class CheckResult(BaseModel):
    """Result of a single mask validation check."""
    rule_id: str
    severity: Severity
    passed: bool
    message: str
    evidence: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class ValidationReport(BaseModel):
    """Collection of validation check results."""
    checks: List[CheckResult] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")

    @property
    def has_errors(self):
        """Check if any errors exist."""
        return any(c.severity == Severity.ERROR and not c.passed for c in self.checks)

    @property
    def error_count(self):
        """Count of failed error-level checks."""
        return sum(1 for c in self.checks if c.severity == Severity.ERROR and not c.passed)

    @property
    def warning_count(self):
        """Count of failed warning-level checks."""
        return sum(1 for c in self.checks if c.severity == Severity.WARN and not c.passed)


class SessionView(BaseModel):
    """Snapshot of a session delivered to the UI on every state change."""
    phase: Phase
    overlay: Optional[np.ndarray] = None
    can_manual_refine: bool = False
    can_accept: bool = False
    can_reject: bool = False
    can_undo: bool = False
    can_redo: bool = False
    stroke_count: int = 0
    warning: Optional[str] = None
    error: Optional[str] = None

    model_config = ConfigDict(extra="forbid", frozen=True, arbitrary_types_allowed=True)


# Mask helpers

def empty_mask(width, height):
    """
    Create an all-zero mask of the given image size.

    Raises InvalidDimensions for zero or negative sizes.
    """
    if width <= 0 or height <= 0:
        raise InvalidDimensions(width, height)
    return np.zeros((height, width), dtype=np.uint8)


def mask_bbox(mask, threshold=0):
    """
    Compute the bounding box of pixels strictly greater than threshold.

    Returns None for an empty mask.
    """
    ys, xs = np.nonzero(mask > threshold)
    if len(xs) == 0:
        return None
    return BoundingBox(
        min_x=int(xs.min()),
        min_y=int(ys.min()),
        max_x=int(xs.max()),
        max_y=int(ys.max()),
    )


def expand_bbox(bbox, margin, width, height):
    """Grow a bounding box by margin pixels, clamped to the image bounds."""
    return BoundingBox(
        min_x=max(0, bbox.min_x - margin),
        min_y=max(0, bbox.min_y - margin),
        max_x=min(width - 1, bbox.max_x + margin),
        max_y=min(height - 1, bbox.max_y + margin),
    )


def is_binary(mask):
    """Check that a mask only holds the values 0 and 1."""
    return bool(np.all((mask == 0) | (mask == 1)))


def mask_size(mask):
    """Return (width, height) of a mask or image array."""
    return mask.shape[1], mask.shape[0]
