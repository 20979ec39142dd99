"""
Segmentation capability interface for removalmask.

Providers turn an image plus a geometric prompt into one or more
probability masks. The snap adapter only depends on the abstract
interface; MobileSamProvider runs an exported MobileSAM encoder/decoder
pair through onnxruntime.
"""

import asyncio
from abc import ABC, abstractmethod

import cv2
import numpy as np

from removalmask.errors import SegmentationFailure
from removalmask.models import PromptKind
from removalmask.tracer import get_tracer, trace


class SegmentationProvider(ABC):
    """Abstract interface for segmentation providers."""

    input_size = 1024

    def start(self):
        """Acquire model resources. Called once before the first segment()."""

    def stop(self):
        """Release model resources."""

    @abstractmethod
    def supports(self, kind):
        """Check whether the provider accepts prompts of the given PromptKind."""
        pass

    @abstractmethod
    async def segment(self, image, prompt):
        """
        Segment the prompted object.

        Args:
            image: RGB numpy array (H, W, 3)
            prompt: GeometricPrompt in model input coordinates

        Returns:
            list of float arrays with probabilities in [0, 1]
        """
        pass


class MobileSamProvider(SegmentationProvider):
    """
    MobileSAM via onnxruntime.

    The encoder takes a (size, size, 3) float image normalised with the
    ImageNet mean/std after a longest-side resize and zero padding. The
    decoder follows the standard SAM ONNX export: point prompts get a
    padding point with label -1, box prompts are passed as two corner
    points labelled 2 and 3.
    """

    MEAN = np.array([123.675, 116.28, 103.53], dtype=np.float32)
    STD = np.array([58.395, 57.12, 57.375], dtype=np.float32)
    LOW_RES_MASK_SIZE = 256

    def __init__(self, encoder_path, decoder_path, input_size=1024, providers=None):
        self.encoder_path = encoder_path
        self.decoder_path = decoder_path
        self.input_size = input_size
        self.providers = providers or ["CPUExecutionProvider"]
        self._encoder = None
        self._decoder = None

    @classmethod
    def from_config(cls, config):
        """Build a provider from a SegmentationModelConfig."""
        return cls(
            encoder_path=config.encoder_path,
            decoder_path=config.decoder_path,
            input_size=config.input_size,
            providers=list(config.providers),
        )

    @trace(label="mobile_sam_start")
    def start(self):
        import onnxruntime as ort

        if not self.encoder_path or not self.decoder_path:
            raise SegmentationFailure("MobileSAM encoder and decoder paths must be configured")

        self._encoder = ort.InferenceSession(self.encoder_path, providers=self.providers)
        self._decoder = ort.InferenceSession(self.decoder_path, providers=self.providers)
        get_tracer().event(f"Loaded MobileSAM sessions providers={self.providers}")

    def stop(self):
        self._encoder = None
        self._decoder = None

    @property
    def started(self):
        return self._encoder is not None and self._decoder is not None

    def supports(self, kind):
        return kind in (PromptKind.POINT, PromptKind.BOX)

    async def segment(self, image, prompt):
        if not self.started:
            raise SegmentationFailure("MobileSAM provider used before start()")
        return await asyncio.to_thread(self._run, image, prompt)

    def preprocess(self, image):
        """
        Resize the longest side to input_size, normalise and zero-pad.

        Returns the (size, size, 3) float32 tensor and the resized (h, w).
        """
        h, w = image.shape[:2]
        scale = self.input_size / max(h, w)
        new_w = max(1, int(round(w * scale)))
        new_h = max(1, int(round(h * scale)))
        resized = cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_LINEAR)

        tensor = np.zeros((self.input_size, self.input_size, 3), dtype=np.float32)
        tensor[:new_h, :new_w] = (resized.astype(np.float32) - self.MEAN) / self.STD
        return tensor, (new_h, new_w)

    def prompt_arrays(self, prompt, resized=None):
        """
        Build decoder point_coords / point_labels from a prompt.

        Box prompts arrive scaled per axis to the full model square. When
        the resized (h, w) of the padded image is given, the box is mapped
        onto that region so it lines up with the image content.
        """
        if prompt.kind == PromptKind.POINT:
            coords = [list(prompt.point), [0.0, 0.0]]
            labels = [float(prompt.label), -1.0]
        else:
            x0, y0, x1, y1 = prompt.box
            if resized is not None:
                sx = resized[1] / self.input_size
                sy = resized[0] / self.input_size
                x0, x1 = x0 * sx, x1 * sx
                y0, y1 = y0 * sy, y1 * sy
            coords = [[x0, y0], [x1, y1]]
            labels = [2.0, 3.0]

        point_coords = np.array([coords], dtype=np.float32)
        point_labels = np.array([labels], dtype=np.float32)
        return point_coords, point_labels

    def _run(self, image, prompt):
        tracer = get_tracer()

        tensor, (resized_h, resized_w) = self.preprocess(image)
        embeddings = self._encoder.run(None, {"input_image": tensor})[0]

        point_coords, point_labels = self.prompt_arrays(prompt, (resized_h, resized_w))
        size = self.LOW_RES_MASK_SIZE
        decoder_inputs = {
            "image_embeddings": embeddings,
            "point_coords": point_coords,
            "point_labels": point_labels,
            "mask_input": np.zeros((1, 1, size, size), dtype=np.float32),
            "has_mask_input": np.zeros(1, dtype=np.float32),
            "orig_im_size": np.array([resized_h, resized_w], dtype=np.float32),
        }
        outputs = self._decoder.run(["masks"], decoder_inputs)
        logits = outputs[0]

        if logits.ndim != 4 or logits.shape[0] != 1:
            raise SegmentationFailure(f"Unexpected decoder mask shape {logits.shape}")

        candidates = [1.0 / (1.0 + np.exp(-m.astype(np.float32))) for m in logits[0]]
        tracer.event(f"MobileSAM produced {len(candidates)} candidates", shape=logits.shape)
        return candidates
