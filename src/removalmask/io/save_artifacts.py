"""
Debug artifact saving for removalmask.

Writes per-stage mask images, preview composites and JSON metrics when
debug output is enabled, plus a mask analysis helper that flags
anti-aliased (grey) pixels.
"""

import json
import os

import cv2
import numpy as np

from removalmask.preview.overlay import blend_overlay, overlay
from removalmask.tracer import get_tracer


def ensure_dir(path):
    """Create directory if it does not exist."""
    os.makedirs(path, exist_ok=True)


def get_debug_dir(out_dir, session_id, stage_name):
    """
    Get the debug directory path for a stage.

    Creates the directory if it does not exist.
    """
    debug_dir = os.path.join(out_dir, "debug", session_id, stage_name)
    ensure_dir(debug_dir)
    return debug_dir


def save_image(img, path, max_edge=None):
    """
    Save an image to disk.

    Optionally downscales to max_edge while preserving aspect ratio.
    RGB and RGBA inputs are converted to OpenCV channel order.
    """
    tracer = get_tracer()

    if max_edge and max(img.shape[:2]) > max_edge:
        scale = max_edge / max(img.shape[:2])
        new_size = (int(img.shape[1] * scale), int(img.shape[0] * scale))
        img = cv2.resize(img, new_size, interpolation=cv2.INTER_NEAREST)

    if img.ndim == 3 and img.shape[2] == 3:
        img = cv2.cvtColor(img, cv2.COLOR_RGB2BGR)
    elif img.ndim == 3 and img.shape[2] == 4:
        img = cv2.cvtColor(img, cv2.COLOR_RGBA2BGRA)

    ensure_dir(os.path.dirname(path))
    cv2.imwrite(path, img)
    tracer.event(f"Saved image: {path}", level="DEBUG")


def save_json(data, path, indent=2):
    """Save a dictionary or Pydantic model to JSON."""
    tracer = get_tracer()

    ensure_dir(os.path.dirname(path))

    if hasattr(data, "model_dump"):
        data = data.model_dump()

    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=indent, default=str)

    tracer.event(f"Saved JSON: {path}", level="DEBUG")


def analyze_mask(mask):
    """
    Count pure-black, pure-white and grey pixels of a mask.

    Accepts {0, 1} masks and 8-bit {0, 255} renderings. Any value other
    than the two extremes counts as grey, which indicates blur or
    anti-aliasing leaked into the mask.
    """
    values = np.asarray(mask)
    high = 1 if values.max(initial=0) <= 1 else 255

    total = int(values.size)
    black = int(np.count_nonzero(values == 0))
    white = int(np.count_nonzero(values == high))
    grey = total - black - white

    levels, counts = np.unique(values[(values != 0) & (values != high)], return_counts=True)
    report = {
        "total_pixels": total,
        "black_pixels": black,
        "white_pixels": white,
        "grey_pixels": grey,
        "grey_ratio": round(grey / total, 6) if total else 0.0,
        "grey_levels": {int(level): int(count) for level, count in zip(levels[:10], counts[:10])},
        "is_binary": grey == 0,
    }

    if grey:
        get_tracer().event(f"Mask has {grey} grey pixels", level="WARN")

    return report


class DebugArtifactWriter:
    """
    Manages debug artifact writing for one removal session.

    Handles creation of debug directories and provides convenience methods
    for the artifact types the pipeline produces.
    """

    def __init__(self, out_dir, session_id, enabled=True, max_edge=1600):
        self.out_dir = out_dir
        self.session_id = session_id
        self.enabled = enabled
        self.max_edge = max_edge

    @classmethod
    def from_config(cls, config, session_id):
        """Build a writer from a DebugConfig, or None when disabled."""
        if not config.enabled:
            return None
        return cls(config.out_dir, session_id, enabled=True, max_edge=config.max_edge_scale)

    def get_stage_dir(self, stage_name):
        """Get the debug directory for a stage."""
        return get_debug_dir(self.out_dir, self.session_id, stage_name)

    def save_image(self, img, stage_name, filename):
        """Save an image artifact."""
        if not self.enabled:
            return
        path = os.path.join(self.get_stage_dir(stage_name), filename)
        save_image(img, path, max_edge=self.max_edge)

    def save_mask(self, mask, stage_name, filename):
        """Save a {0, 1} mask as a black/white PNG."""
        if not self.enabled:
            return
        self.save_image((mask > 0).astype(np.uint8) * 255, stage_name, filename)

    def save_json(self, data, stage_name, filename):
        """Save a JSON artifact."""
        if not self.enabled:
            return
        path = os.path.join(self.get_stage_dir(stage_name), filename)
        save_json(data, path)

    def save_preview(self, rgb_img, mask, stage_name, filename, color=(255, 0, 0), alpha=128):
        """Composite a mask overlay on the image and save it."""
        if not self.enabled:
            return
        preview = blend_overlay(rgb_img, overlay(mask, color=color, alpha=alpha))
        self.save_image(preview, stage_name, filename)
