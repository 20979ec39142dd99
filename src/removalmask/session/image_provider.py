"""
Image provider for removalmask sessions.

Holds the image being edited. The coordinator reads it to size masks and
commits inpainted results back through commit(), which keeps the edit
history append-only.
"""

import numpy as np

from removalmask.errors import InvalidDimensions
from removalmask.tracer import get_tracer


class ImageProvider:
    """The current image and its committed edit history."""

    def __init__(self, image):
        self._validate(image)
        self._image = image
        self.history = [image]

    @staticmethod
    def _validate(image):
        if not isinstance(image, np.ndarray) or image.ndim not in (2, 3):
            raise ValueError("Image must be a 2-D or 3-D numpy array")
        height, width = image.shape[:2]
        if width <= 0 or height <= 0:
            raise InvalidDimensions(width, height)

    @property
    def image(self):
        return self._image

    @property
    def width(self):
        return self._image.shape[1]

    @property
    def height(self):
        return self._image.shape[0]

    def commit(self, image):
        """Replace the current image with an edited one of the same size."""
        self._validate(image)
        if image.shape[:2] != self._image.shape[:2]:
            raise ValueError(
                f"Committed image size {image.shape[1]}x{image.shape[0]} "
                f"does not match {self.width}x{self.height}"
            )
        self._image = image
        self.history.append(image)
        get_tracer().event(f"Committed edit #{len(self.history) - 1}")
