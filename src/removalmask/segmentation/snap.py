"""
Segmentation snapping for removalmask.

Derives a geometric prompt from the user's rough mask, asks a
segmentation provider for the object under it, and fuses the result with
the rough mask so the snapped region never leaves the user's intent area.
Every model-facing failure falls back to the rough mask unchanged.
"""

from typing import Optional

import cv2
import numpy as np
from pydantic import BaseModel, ConfigDict

from removalmask.config import SnapConfig
from removalmask.errors import SegmentationFailure
from removalmask.models import GeometricPrompt, PromptKind, expand_bbox, mask_bbox, mask_size
from removalmask.tracer import get_tracer, trace


class SnapResult(BaseModel):
    """Outcome of a snap: the mask plus whether it is a fallback."""
    mask: object
    fallback: bool = False
    empty: bool = False
    reason: Optional[str] = None

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)


class SegmentationSnapAdapter:
    """
    Snaps a rough stroke mask to object boundaries using a
    SegmentationProvider.
    """

    def __init__(self, provider, config=None):
        self.provider = provider
        self.config = config or SnapConfig()

    async def snap(self, image, rough_mask):
        """Return the snapped mask, or rough_mask itself on any failure."""
        result = await self.snap_detailed(image, rough_mask)
        return result.mask

    @trace(label="snap")
    async def snap_detailed(self, image, rough_mask):
        tracer = get_tracer()

        bbox = mask_bbox(rough_mask)
        if bbox is None:
            tracer.event("Rough mask is empty, nothing to snap")
            return SnapResult(mask=rough_mask, empty=True)

        try:
            prompt = self.derive_prompt(rough_mask, bbox)
            candidates = await self.provider.segment(image, prompt)
            probability = self.select_candidate(candidates, prompt, rough_mask)
            snapped = self.fuse(probability, rough_mask, bbox)
        except Exception as e:
            tracer.event(f"Segmentation failed, keeping rough mask: {e}", level="WARN")
            return SnapResult(mask=rough_mask, fallback=True, reason=str(e) or type(e).__name__)

        tracer.event(
            "Snapped mask",
            rough=int(np.count_nonzero(rough_mask)),
            snapped=int(np.count_nonzero(snapped)),
        )
        return SnapResult(mask=snapped)

    def choose_prompt_kind(self):
        """Resolve the configured prompt mode against provider capabilities."""
        mode = self.config.prompt_mode
        if mode == "point":
            kinds = [PromptKind.POINT]
        elif mode == "box":
            kinds = [PromptKind.BOX]
        else:
            kinds = [PromptKind.POINT, PromptKind.BOX]

        for kind in kinds:
            if self.provider.supports(kind):
                return kind

        raise SegmentationFailure(f"Provider supports no prompt kind for mode '{mode}'")

    def derive_prompt(self, rough_mask, bbox):
        """
        Build a prompt in model input coordinates.

        Points use one uniform scale from the image's longer side; boxes
        are scaled per axis.
        """
        width, height = mask_size(rough_mask)
        model_size = self.provider.input_size
        kind = self.choose_prompt_kind()

        if kind == PromptKind.POINT:
            scale = model_size / max(width, height)
            cx, cy = bbox.center
            return GeometricPrompt(
                kind=kind,
                point=(cx * scale, cy * scale),
                label=1,
                source_bbox=bbox,
                model_size=model_size,
            )

        sx = model_size / width
        sy = model_size / height
        return GeometricPrompt(
            kind=kind,
            box=(bbox.min_x * sx, bbox.min_y * sy, bbox.max_x * sx, bbox.max_y * sy),
            source_bbox=bbox,
            model_size=model_size,
        )

    def select_candidate(self, candidates, prompt, rough_mask):
        """
        Pick the candidate with the highest mean activation over the
        prompt's bounding box.
        """
        if not candidates:
            raise SegmentationFailure("Segmentation returned no masks")

        width, height = mask_size(rough_mask)
        best = None
        best_score = None

        for idx, candidate in enumerate(candidates):
            prob = np.asarray(candidate, dtype=np.float32)
            prob = np.squeeze(prob)
            if prob.ndim != 2 or prob.size == 0:
                raise SegmentationFailure(f"Malformed mask candidate {idx} with shape {np.shape(candidate)}")
            if not np.all(np.isfinite(prob)):
                raise SegmentationFailure(f"Mask candidate {idx} contains non-finite values")

            score = self._score(prob, prompt.source_bbox, width, height)
            get_tracer().event(f"Candidate {idx} score={score:.4f}", level="DEBUG")
            if best_score is None or score > best_score:
                best, best_score = prob, score

        return best

    def _score(self, prob, bbox, width, height):
        """Mean activation inside bbox mapped into the candidate's resolution."""
        ch, cw = prob.shape
        x0 = min(cw - 1, int(bbox.min_x * cw / width))
        y0 = min(ch - 1, int(bbox.min_y * ch / height))
        x1 = min(cw - 1, int(bbox.max_x * cw / width))
        y1 = min(ch - 1, int(bbox.max_y * ch / height))
        return float(prob[y0:y1 + 1, x0:x1 + 1].mean())

    def fuse(self, probability, rough_mask, bbox):
        """
        Combine the resized probability map with the rough mask.

        A pixel is foreground only if it lies inside the expanded rough
        bbox, the rough mask marks it, and the probability clears both the
        mask threshold and the fuse threshold.
        """
        width, height = mask_size(rough_mask)
        cfg = self.config

        resized = cv2.resize(probability, (width, height), interpolation=cv2.INTER_LINEAR)
        expanded = expand_bbox(bbox, cfg.bbox_margin, width, height)

        inside = np.zeros((height, width), dtype=bool)
        inside[expanded.min_y:expanded.max_y + 1, expanded.min_x:expanded.max_x + 1] = True

        rough_strong = rough_mask.astype(np.float32) >= max(cfg.rough_threshold, 1e-6)
        seg = resized > max(cfg.mask_threshold, cfg.fuse_threshold)

        return (inside & rough_strong & seg).astype(np.uint8)
