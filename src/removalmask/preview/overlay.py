"""
Live preview overlays for removalmask.

Overlays are derived views of a mask and are rebuilt from scratch
whenever the authoritative mask changes.
"""

import numpy as np

from removalmask.config import PreviewConfig


def overlay(mask, color=None, alpha=None):
    """
    Render a mask as an RGBA image.

    Foreground pixels get a constant translucent colour; background pixels
    are fully transparent.
    """
    defaults = PreviewConfig()
    color = defaults.color if color is None else color
    alpha = defaults.alpha if alpha is None else alpha

    h, w = mask.shape
    rgba = np.zeros((h, w, 4), dtype=np.uint8)
    rgba[mask > 0] = (color[0], color[1], color[2], alpha)
    return rgba


def overlay_from_config(mask, config):
    """Render an overlay with colours from a PreviewConfig."""
    return overlay(mask, color=config.color, alpha=config.alpha)


def blend_overlay(rgb_img, rgba_overlay):
    """Alpha-composite an RGBA overlay onto an RGB image."""
    alpha = rgba_overlay[..., 3:4].astype(np.float32) / 255.0
    base = rgb_img.astype(np.float32)
    color = rgba_overlay[..., :3].astype(np.float32)
    blended = base * (1.0 - alpha) + color * alpha
    return np.clip(np.rint(blended), 0, 255).astype(np.uint8)
