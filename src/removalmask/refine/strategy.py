"""
Refinement strategy selection for removalmask.

Every strategy shares the same rough-mask -> refined-mask contract; the
session configuration picks which one the coordinator runs.
"""

import asyncio
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from removalmask.refine.morphology import refine
from removalmask.tracer import get_tracer, trace


class RefinementStrategy(str, Enum):
    """How a rough mask becomes a refined mask."""
    MORPHOLOGY = "morphology"
    SEGMENTATION = "segmentation"
    SEGMENTATION_MORPHOLOGY = "segmentation_morphology"


class RefinementOutcome(BaseModel):
    """Refined mask plus the soft warning to surface, if any."""
    mask: object
    warning: Optional[str] = None

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)


class MaskRefiner:
    """
    Dispatches refinement to the morphological refiner and/or the
    segmentation snap adapter.

    Morphology is CPU-bound and runs in a worker thread so the event loop
    stays responsive.
    """

    def __init__(self, strategy, refine_config, snap_adapter=None,
                 fallback_to_morphology=True, debug_writer=None):
        self.strategy = RefinementStrategy(strategy)
        self.refine_config = refine_config
        self.snap_adapter = snap_adapter
        self.fallback_to_morphology = fallback_to_morphology
        self.debug_writer = debug_writer

        if self.strategy != RefinementStrategy.MORPHOLOGY and snap_adapter is None:
            raise ValueError(f"Strategy {self.strategy.value} requires a segmentation snap adapter")

    async def morphology(self, mask):
        return await asyncio.to_thread(refine, mask, self.refine_config, self.debug_writer)

    @trace(label="refine_mask")
    async def refine(self, image, rough_mask):
        """Produce a refined mask from a rough mask snapshot."""
        tracer = get_tracer()
        tracer.event(f"Strategy: {self.strategy.value}")

        if self.strategy == RefinementStrategy.MORPHOLOGY:
            return RefinementOutcome(mask=await self.morphology(rough_mask))

        result = await self.snap_adapter.snap_detailed(image, rough_mask)

        if result.fallback:
            if self.fallback_to_morphology:
                warning = f"Segmentation unavailable ({result.reason}), using cleaned stroke mask"
                return RefinementOutcome(mask=await self.morphology(rough_mask), warning=warning)
            warning = f"Segmentation unavailable ({result.reason}), using stroke mask"
            return RefinementOutcome(mask=result.mask, warning=warning)

        if self.strategy == RefinementStrategy.SEGMENTATION_MORPHOLOGY and not result.empty:
            return RefinementOutcome(mask=await self.morphology(result.mask))

        return RefinementOutcome(mask=result.mask)
