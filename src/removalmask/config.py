"""
Configuration management for removalmask.

Loads YAML configuration with sensible defaults for every pipeline stage
and for the interactive session.
"""

import os
from dataclasses import asdict, dataclass, field, fields

import yaml


@dataclass
class RefineConfig:
    """Configuration for the morphological refiner."""
    close_iterations: int = 2
    max_gap: int = 40
    min_region_size: int = 50
    smooth_iterations: int = 1


@dataclass
class SnapConfig:
    """Configuration for segmentation snapping."""
    prompt_mode: str = "auto"  # "auto", "point" or "box"
    bbox_margin: int = 5
    mask_threshold: float = 0.5
    rough_threshold: float = 0.1
    fuse_threshold: float = 0.5


@dataclass
class PreviewConfig:
    """Configuration for the live preview overlay."""
    color: tuple = (255, 0, 0)
    alpha: int = 128


@dataclass
class InpaintConfig:
    """Configuration for the bundled inpainting providers."""
    method: str = "telea"  # "telea" or "ns"
    radius: int = 5
    model_path: str = None  # ONNX inpainting network, used by OnnxInpaintProvider
    model_input_size: int = 512


@dataclass
class SegmentationModelConfig:
    """Configuration for the MobileSAM ONNX provider."""
    encoder_path: str = None
    decoder_path: str = None
    input_size: int = 1024
    providers: list = field(default_factory=lambda: ["CPUExecutionProvider"])


@dataclass
class SessionConfig:
    """Configuration for the debounce coordinator."""
    debounce_ms: int = 600
    auto_apply: bool = True
    auto_apply_delay_ms: int = 0
    strategy: str = "segmentation"  # "morphology", "segmentation", "segmentation_morphology"
    fallback_to_morphology: bool = True
    history_limit: int = 50


@dataclass
class TracingConfig:
    """Configuration for runtime tracing."""
    enabled: bool = False
    level: str = "INFO"
    file_path: str = None
    json_output: bool = False


@dataclass
class DebugConfig:
    """Configuration for debug artifact generation."""
    enabled: bool = False
    out_dir: str = "removalmask_debug"
    max_edge_scale: int = 1600


@dataclass
class RemovalConfig:
    """Complete configuration."""
    refine: RefineConfig = field(default_factory=RefineConfig)
    snap: SnapConfig = field(default_factory=SnapConfig)
    preview: PreviewConfig = field(default_factory=PreviewConfig)
    inpaint: InpaintConfig = field(default_factory=InpaintConfig)
    segmentation_model: SegmentationModelConfig = field(default_factory=SegmentationModelConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    tracing: TracingConfig = field(default_factory=TracingConfig)
    debug: DebugConfig = field(default_factory=DebugConfig)


def load_config(config_path=None):
    """
    Load configuration from YAML file.

    Falls back to defaults for any missing values.
    """
    config = RemovalConfig()

    if config_path and os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f) or {}

        config = _merge_config(config, yaml_data)

    return config


def _merge_config(config, yaml_data):
    """Merge YAML data into config dataclass, ignoring unknown keys."""
    for section in fields(config):
        values = yaml_data.get(section.name)
        if not isinstance(values, dict):
            continue
        target = getattr(config, section.name)
        for key, value in values.items():
            if hasattr(target, key):
                if key == "color" and isinstance(value, list):
                    value = tuple(value)
                setattr(target, key, value)

    return config


def save_default_config(path):
    """Save default configuration to YAML file for reference."""
    yaml_data = asdict(RemovalConfig())
    yaml_data["preview"]["color"] = list(yaml_data["preview"]["color"])

    with open(path, "w", encoding="utf-8") as f:
        yaml.dump(yaml_data, f, default_flow_style=False, sort_keys=False)
