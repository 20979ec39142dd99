"""
Inpainting capability interface for removalmask.

The coordinator hands the authoritative refined mask to an InpaintProvider
and commits whatever image comes back. Two providers ship with the
package: classical OpenCV inpainting and a generic ONNX image+mask model.
"""

import asyncio
from abc import ABC, abstractmethod

import cv2
import numpy as np

from removalmask.errors import ApplyFailure
from removalmask.tracer import get_tracer, trace


class InpaintProvider(ABC):
    """Abstract interface for inpainting providers."""

    def start(self):
        """Acquire model resources."""

    def stop(self):
        """Release model resources."""

    @abstractmethod
    async def inpaint(self, image, mask):
        """
        Fill the masked region of an image.

        Args:
            image: RGB numpy array (H, W, 3)
            mask: uint8 mask (H, W) with 1 for pixels to remove

        Returns:
            RGB numpy array of the same shape as image
        """
        pass


class OpenCvInpaintProvider(InpaintProvider):
    """Classical inpainting with cv2.inpaint (Telea or Navier-Stokes)."""

    METHODS = {
        "telea": cv2.INPAINT_TELEA,
        "ns": cv2.INPAINT_NS,
    }

    def __init__(self, method="telea", radius=5):
        if method not in self.METHODS:
            raise ValueError(f"Unknown inpaint method: {method}")
        self.method = method
        self.radius = radius

    @classmethod
    def from_config(cls, config):
        return cls(method=config.method, radius=config.radius)

    async def inpaint(self, image, mask):
        return await asyncio.to_thread(self._run, image, mask)

    @trace(label="opencv_inpaint")
    def _run(self, image, mask):
        mask_u8 = (mask > 0).astype(np.uint8) * 255
        result = cv2.inpaint(image, mask_u8, self.radius, self.METHODS[self.method])
        get_tracer().event(f"Inpainted {int(np.count_nonzero(mask_u8))} pixels method={self.method}")
        return result


class OnnxInpaintProvider(InpaintProvider):
    """
    Image+mask inpainting network run through onnxruntime.

    Inputs are resized to a square model size: the image as a (1, 3, S, S)
    tensor in [-1, 1], the mask as (1, 1, S, S) in {0, 1}. The (1, 3, S, S)
    output is mapped back from [-1, 1] and resized to the source size.
    """

    def __init__(self, model_path, input_size=512, providers=None):
        self.model_path = model_path
        self.input_size = input_size
        self.providers = providers or ["CPUExecutionProvider"]
        self._session = None

    @classmethod
    def from_config(cls, config):
        """Build a provider from an InpaintConfig."""
        return cls(config.model_path, input_size=config.model_input_size)

    @trace(label="onnx_inpaint_start")
    def start(self):
        import onnxruntime as ort

        if not self.model_path:
            raise ApplyFailure("ONNX inpainting model path must be configured")

        self._session = ort.InferenceSession(self.model_path, providers=self.providers)

    def stop(self):
        self._session = None

    async def inpaint(self, image, mask):
        if self._session is None:
            raise ApplyFailure("ONNX inpaint provider used before start()")
        return await asyncio.to_thread(self._run, image, mask)

    def preprocess(self, image, mask):
        size = self.input_size
        img = cv2.resize(image, (size, size), interpolation=cv2.INTER_AREA)
        img = img.astype(np.float32) / 127.5 - 1.0
        img = np.transpose(img, (2, 0, 1))[np.newaxis]

        m = cv2.resize((mask > 0).astype(np.uint8), (size, size), interpolation=cv2.INTER_NEAREST)
        m = m.astype(np.float32)[np.newaxis, np.newaxis]
        return img, m

    def postprocess(self, output, width, height):
        out = np.squeeze(output, axis=0)
        out = np.transpose(out, (1, 2, 0))
        out = np.clip((out + 1.0) * 127.5, 0, 255).astype(np.uint8)
        return cv2.resize(out, (width, height), interpolation=cv2.INTER_CUBIC)

    @trace(label="onnx_inpaint")
    def _run(self, image, mask):
        img, m = self.preprocess(image, mask)
        names = [i.name for i in self._session.get_inputs()]
        output = self._session.run(None, {names[0]: img, names[1]: m})[0]

        if output.ndim != 4 or output.shape[1] != 3:
            raise ApplyFailure(f"Unexpected inpaint output shape {output.shape}")

        height, width = image.shape[:2]
        return self.postprocess(output, width, height)
