"""Pytest fixtures for removalmask tests."""

import asyncio
import tempfile

import numpy as np
import pytest

from removalmask.inpaint.providers import InpaintProvider
from removalmask.models import PromptKind
from removalmask.segmentation.providers import SegmentationProvider


class FakeSegmentationProvider(SegmentationProvider):
    """
    Returns a fixed probability map for every prompt.

    With a gate set, the first call blocks until the gate is released so
    tests can add input while a refinement is in flight.
    """

    input_size = 64

    def __init__(self, probability=None, kinds=(PromptKind.POINT, PromptKind.BOX), error=None):
        self.probability = probability
        self.kinds = kinds
        self.error = error
        self.calls = []
        self.gate = None
        self.entered = None
        self.started = False

    def block_first_call(self):
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    def start(self):
        self.started = True

    def stop(self):
        self.started = False

    def supports(self, kind):
        return kind in self.kinds

    async def segment(self, image, prompt):
        self.calls.append(prompt)
        if self.gate is not None and len(self.calls) == 1:
            self.entered.set()
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if self.probability is not None:
            return [self.probability]
        return [np.ones((self.input_size, self.input_size), dtype=np.float32)]


class FakeInpaintProvider(InpaintProvider):
    """Paints masked pixels black and records every mask it receives."""

    def __init__(self, error=None):
        self.error = error
        self.masks = []
        self.started = False

    def start(self):
        self.started = True

    def stop(self):
        self.started = False

    async def inpaint(self, image, mask):
        self.masks.append(mask.copy())
        if self.error is not None:
            raise self.error
        result = image.copy()
        result[mask > 0] = 0
        return result


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def sample_image():
    """A 100x80 mid-grey RGB image."""
    return np.full((80, 100, 3), 128, dtype=np.uint8)


@pytest.fixture
def default_config():
    """Create default configuration."""
    from removalmask.config import RemovalConfig
    return RemovalConfig()


@pytest.fixture
def fast_config():
    """Configuration with a short debounce for coordinator tests."""
    from removalmask.config import RemovalConfig
    config = RemovalConfig()
    config.session.debounce_ms = 20
    return config


@pytest.fixture
def horizontal_stroke():
    from removalmask.models import Stroke
    return Stroke(points=[(0.2, 0.5), (0.6, 0.5)], brush_radius=3)


@pytest.fixture
def vertical_stroke():
    from removalmask.models import Stroke
    return Stroke(points=[(0.8, 0.2), (0.8, 0.7)], brush_radius=3)


@pytest.fixture
def fake_segmentation():
    return FakeSegmentationProvider()


@pytest.fixture
def fake_inpaint():
    return FakeInpaintProvider()
