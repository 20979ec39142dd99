"""
Stroke rasterization for removalmask.

Turns the user's brush strokes into a binary rough mask at image
resolution. Strokes are painted in order, so an eraser stroke clears
whatever earlier strokes painted beneath it.
"""

import cv2
import numpy as np

from removalmask.models import empty_mask
from removalmask.tracer import get_tracer, trace


@trace(label="rasterize")
def rasterize(strokes, width, height):
    """
    Rasterize strokes into a uint8 mask with 1 for marked pixels.

    Each stroke is drawn as a polyline of width 2 * brush_radius with round
    caps and joins. A single-point stroke becomes a filled disc. Drawing
    uses LINE_8 so the output never contains anti-aliased values.

    Raises InvalidDimensions for zero or negative sizes.
    """
    tracer = get_tracer()

    mask = empty_mask(width, height)

    for stroke in strokes:
        value = 0 if stroke.is_eraser else 1
        radius = max(0, int(round(stroke.brush_radius)))
        points = denormalize_points(stroke.points, width, height)
        draw_stroke(mask, points, radius, value)

    tracer.event(
        f"Rasterized {len(strokes)} strokes",
        foreground=int(np.count_nonzero(mask)),
    )

    return mask


def denormalize_points(points, width, height):
    """Scale normalized [0, 1] points to integer pixel coordinates."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    pts[:, 0] *= width
    pts[:, 1] *= height
    pts = np.rint(pts).astype(np.int32)
    # x == width is a valid normalized endpoint but lands one past the last column
    np.clip(pts[:, 0], 0, width - 1, out=pts[:, 0])
    np.clip(pts[:, 1], 0, height - 1, out=pts[:, 1])
    return pts


def draw_stroke(mask, points, radius, value):
    """
    Paint one stroke into mask in place.

    Segments are drawn with thickness 2 * radius; a filled disc at every
    vertex gives the round caps and joins.
    """
    thickness = max(1, 2 * radius)

    for i in range(1, len(points)):
        p0 = (int(points[i - 1][0]), int(points[i - 1][1]))
        p1 = (int(points[i][0]), int(points[i][1]))
        cv2.line(mask, p0, p1, value, thickness=thickness, lineType=cv2.LINE_8)

    for x, y in points:
        cv2.circle(mask, (int(x), int(y)), radius, value, thickness=-1, lineType=cv2.LINE_8)
