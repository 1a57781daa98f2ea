"""
Configuration management for the detection demo.

Provides a layered configuration system with the following precedence
(highest to lowest):

    CLI arguments > Environment variables > YAML config file > Defaults

Design constraints:
    - The system MUST run with zero configuration (safe defaults only).
    - Missing or invalid values fail early and loudly.
    - No detection logic, I/O, or model loading belongs here.

Non-goals:
    - No dynamic reloading (a scheduler can be handed a new config).
    - No database-backed or remote configuration.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Optional, Tuple

import yaml

from detectview.families import ModelFamily

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Project root resolution
# ---------------------------------------------------------------------------
# Resolved relative to this file's location: detectview/config.py -> project root
_PROJECT_ROOT = Path(__file__).resolve().parent.parent


def get_project_root() -> Path:
    """Return the resolved project root directory."""
    return _PROJECT_ROOT


# ---------------------------------------------------------------------------
# Configuration dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ModelConfig:
    """Model-related configuration.

    Attributes:
        family: Model family loaded at startup.
        backend: Compute backend, 'cpu' or 'cuda'.
        general_model_path: Frozen TensorFlow SSD graph (.pb) for the general detector.
        general_config_path: Matching text graph (.pbtxt).
        face_prototxt_path: Caffe network definition for the face detector.
        face_weights_path: Caffe weights for the face detector.
        custom_model_path: Model file for the custom family (any cv2.dnn format).
        custom_config_path: Optional companion file for the custom model.
    """

    family: str = ModelFamily.GENERAL.value
    backend: str = "cpu"
    general_model_path: str = "models/ssd_mobilenet_v2_coco.pb"
    general_config_path: str = "models/ssd_mobilenet_v2_coco.pbtxt"
    face_prototxt_path: str = "models/deploy.prototxt"
    face_weights_path: str = "models/res10_300x300_ssd_iter_140000.caffemodel"
    custom_model_path: Optional[str] = None
    custom_config_path: Optional[str] = None


@dataclass(frozen=True)
class DetectionConfig:
    """Detection thresholds and suppression.

    Attributes:
        confidence_threshold: Minimum confidence to accept a detection.
                              None uses the model family default.
        max_detections: Maximum detections per cycle. None uses the
                        model family default.
        iou_threshold: IoU above which same-class boxes are duplicates.
        enable_suppression: Whether non-max suppression runs.
        allowed_classes: Class names to keep. Empty keeps every class.
    """

    confidence_threshold: Optional[float] = None
    max_detections: Optional[int] = None
    iou_threshold: float = 0.5
    enable_suppression: bool = True
    allowed_classes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class InputConfig:
    """Input source configuration.

    Attributes:
        source: Webcam device index (digit string) or image file path.
        resolution: Webcam resolution preset: 'low', 'medium' or 'high'.
        facing_mode: Preferred camera facing: 'environment' or 'user'.
        max_upload_mb: Maximum accepted image file size in megabytes.
        accepted_types: Accepted image MIME types.
    """

    source: str = "0"
    resolution: str = "medium"
    facing_mode: str = "environment"
    max_upload_mb: float = 10.0
    accepted_types: Tuple[str, ...] = (
        "image/jpeg", "image/png", "image/gif", "image/webp",
    )

    @property
    def max_upload_bytes(self) -> int:
        return int(self.max_upload_mb * 1024 * 1024)


@dataclass(frozen=True)
class VisualizationConfig:
    """Rendering parameters.

    Attributes:
        thickness: Bounding box line thickness in pixels.
        font_scale: OpenCV font scale for label tags.
        label_padding: Padding around label text in pixels.
        enable_heatmap: Composite a detection heatmap over the frame.
        enable_tracking: Draw tracking paths across frames.
        heatmap_alpha: Opacity of the heatmap composite.
        max_path_points: Points kept per tracking path.
    """

    thickness: int = 3
    font_scale: float = 0.5
    label_padding: int = 4
    enable_heatmap: bool = False
    enable_tracking: bool = False
    heatmap_alpha: float = 0.6
    max_path_points: int = 30


@dataclass(frozen=True)
class SchedulerConfig:
    """Frame scheduling parameters.

    Attributes:
        still_image_delay_ms: Pause between painting a still image and
                              starting its inference.
        frame_interval_ms: Pause between continuous cycles (0 only yields).
        idle_backoff_ms: Pause after a skipped continuous cycle.
        stall_warning_cycles: Consecutive skipped cycles before a
                              stall diagnostic is raised.
    """

    still_image_delay_ms: int = 100
    frame_interval_ms: int = 0
    idle_backoff_ms: int = 50
    stall_warning_cycles: int = 30


@dataclass(frozen=True)
class AppConfig:
    """Top-level application configuration.

    Aggregates all sub-configurations into a single, frozen object.
    """

    model: ModelConfig = field(default_factory=ModelConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    input: InputConfig = field(default_factory=InputConfig)
    visualization: VisualizationConfig = field(default_factory=VisualizationConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

_VALID_BACKENDS = {"cpu", "cuda"}
_VALID_RESOLUTIONS = {"low", "medium", "high"}
_VALID_FACING_MODES = {"environment", "user"}


def _validate(config: AppConfig) -> None:
    """Validate configuration values. Raises ValueError on invalid state."""

    if config.model.backend not in _VALID_BACKENDS:
        raise ValueError(
            f"Invalid model.backend: '{config.model.backend}'. "
            f"Must be one of {_VALID_BACKENDS}."
        )

    try:
        ModelFamily.parse(config.model.family)
    except ValueError as e:
        raise ValueError(f"Invalid model.family: {e}") from None

    threshold = config.detection.confidence_threshold
    if threshold is not None and not (0.0 <= threshold <= 1.0):
        raise ValueError(
            f"detection.confidence_threshold must be in [0.0, 1.0], "
            f"got {threshold}."
        )

    if not (0.0 <= config.detection.iou_threshold <= 1.0):
        raise ValueError(
            f"detection.iou_threshold must be in [0.0, 1.0], "
            f"got {config.detection.iou_threshold}."
        )

    max_detections = config.detection.max_detections
    if max_detections is not None and max_detections <= 0:
        raise ValueError(
            f"detection.max_detections must be positive or None, "
            f"got {max_detections}."
        )

    if config.input.resolution not in _VALID_RESOLUTIONS:
        raise ValueError(
            f"Invalid input.resolution: '{config.input.resolution}'. "
            f"Must be one of {_VALID_RESOLUTIONS}."
        )

    if config.input.facing_mode not in _VALID_FACING_MODES:
        raise ValueError(
            f"Invalid input.facing_mode: '{config.input.facing_mode}'. "
            f"Must be one of {_VALID_FACING_MODES}."
        )

    if config.input.max_upload_mb <= 0:
        raise ValueError(
            f"input.max_upload_mb must be positive, "
            f"got {config.input.max_upload_mb}."
        )

    if config.visualization.thickness <= 0:
        raise ValueError(
            f"visualization.thickness must be positive, "
            f"got {config.visualization.thickness}."
        )

    if not (0.0 <= config.visualization.heatmap_alpha <= 1.0):
        raise ValueError(
            f"visualization.heatmap_alpha must be in [0.0, 1.0], "
            f"got {config.visualization.heatmap_alpha}."
        )

    if config.visualization.max_path_points < 2:
        raise ValueError(
            f"visualization.max_path_points must be at least 2, "
            f"got {config.visualization.max_path_points}."
        )

    for name in ("still_image_delay_ms", "frame_interval_ms", "idle_backoff_ms"):
        if getattr(config.scheduler, name) < 0:
            raise ValueError(
                f"scheduler.{name} must be non-negative, "
                f"got {getattr(config.scheduler, name)}."
            )


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------

def _parse_bool(value) -> bool:
    """Accept YAML booleans as well as string forms from the environment."""
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"Expected a boolean, got '{value}'.")
    return bool(value)


def _parse_optional(value, cast_type):
    """Cast a value, mapping None and the string 'none' to None."""
    if value is None or (isinstance(value, str) and value.strip().lower() in ("", "none", "null")):
        return None
    return cast_type(value)


def _parse_str_tuple(value) -> Tuple[str, ...]:
    """Convert a YAML list or comma-separated string into a tuple of names."""
    if isinstance(value, str):
        return tuple(v.strip() for v in value.split(",") if v.strip())
    return tuple(str(v) for v in value or ())


def _build_model_config(raw: dict) -> ModelConfig:
    """Build ModelConfig from a raw YAML dict."""
    kwargs = {}
    if "family" in raw:
        kwargs["family"] = str(raw["family"]).lower()
    if "backend" in raw:
        kwargs["backend"] = str(raw["backend"]).lower()
    for key in (
        "general_model_path", "general_config_path",
        "face_prototxt_path", "face_weights_path",
    ):
        if key in raw:
            kwargs[key] = str(raw[key])
    for key in ("custom_model_path", "custom_config_path"):
        if key in raw:
            kwargs[key] = _parse_optional(raw[key], str)
    return ModelConfig(**kwargs)


def _build_detection_config(raw: dict) -> DetectionConfig:
    """Build DetectionConfig from a raw YAML dict."""
    kwargs = {}
    if "confidence_threshold" in raw:
        kwargs["confidence_threshold"] = _parse_optional(raw["confidence_threshold"], float)
    if "max_detections" in raw:
        kwargs["max_detections"] = _parse_optional(raw["max_detections"], int)
    if "iou_threshold" in raw:
        kwargs["iou_threshold"] = float(raw["iou_threshold"])
    if "enable_suppression" in raw:
        kwargs["enable_suppression"] = _parse_bool(raw["enable_suppression"])
    if "allowed_classes" in raw:
        kwargs["allowed_classes"] = _parse_str_tuple(raw["allowed_classes"])
    return DetectionConfig(**kwargs)


def _build_input_config(raw: dict) -> InputConfig:
    """Build InputConfig from a raw YAML dict."""
    kwargs = {}
    if "source" in raw:
        kwargs["source"] = str(raw["source"])
    if "resolution" in raw:
        kwargs["resolution"] = str(raw["resolution"]).lower()
    if "facing_mode" in raw:
        kwargs["facing_mode"] = str(raw["facing_mode"]).lower()
    if "max_upload_mb" in raw:
        kwargs["max_upload_mb"] = float(raw["max_upload_mb"])
    if "accepted_types" in raw:
        kwargs["accepted_types"] = _parse_str_tuple(raw["accepted_types"])
    return InputConfig(**kwargs)


def _build_visualization_config(raw: dict) -> VisualizationConfig:
    """Build VisualizationConfig from a raw YAML dict."""
    kwargs = {}
    if "thickness" in raw:
        kwargs["thickness"] = int(raw["thickness"])
    if "font_scale" in raw:
        kwargs["font_scale"] = float(raw["font_scale"])
    if "label_padding" in raw:
        kwargs["label_padding"] = int(raw["label_padding"])
    if "enable_heatmap" in raw:
        kwargs["enable_heatmap"] = _parse_bool(raw["enable_heatmap"])
    if "enable_tracking" in raw:
        kwargs["enable_tracking"] = _parse_bool(raw["enable_tracking"])
    if "heatmap_alpha" in raw:
        kwargs["heatmap_alpha"] = float(raw["heatmap_alpha"])
    if "max_path_points" in raw:
        kwargs["max_path_points"] = int(raw["max_path_points"])
    return VisualizationConfig(**kwargs)


def _build_scheduler_config(raw: dict) -> SchedulerConfig:
    """Build SchedulerConfig from a raw YAML dict."""
    kwargs = {}
    for key in (
        "still_image_delay_ms", "frame_interval_ms",
        "idle_backoff_ms", "stall_warning_cycles",
    ):
        if key in raw:
            kwargs[key] = int(raw[key])
    return SchedulerConfig(**kwargs)


# ---------------------------------------------------------------------------
# Environment variable overrides
# ---------------------------------------------------------------------------

_ENV_PREFIX = "DETECTVIEW_"


def _apply_env_overrides(raw: dict) -> dict:
    """Apply environment variable overrides to the raw config dict.

    Environment variables follow the pattern:
        DETECTVIEW_MODEL_FAMILY=face-detector
        DETECTVIEW_DETECTION_CONFIDENCE_THRESHOLD=0.7

    The variable name maps to the nested config key by replacing
    underscores after the section name with dots.
    """
    env_map = {
        f"{_ENV_PREFIX}MODEL_FAMILY": ("model", "family"),
        f"{_ENV_PREFIX}MODEL_BACKEND": ("model", "backend"),
        f"{_ENV_PREFIX}MODEL_CUSTOM_MODEL_PATH": ("model", "custom_model_path"),
        f"{_ENV_PREFIX}DETECTION_CONFIDENCE_THRESHOLD": ("detection", "confidence_threshold"),
        f"{_ENV_PREFIX}DETECTION_MAX_DETECTIONS": ("detection", "max_detections"),
        f"{_ENV_PREFIX}DETECTION_IOU_THRESHOLD": ("detection", "iou_threshold"),
        f"{_ENV_PREFIX}DETECTION_ENABLE_SUPPRESSION": ("detection", "enable_suppression"),
        f"{_ENV_PREFIX}DETECTION_ALLOWED_CLASSES": ("detection", "allowed_classes"),
        f"{_ENV_PREFIX}INPUT_SOURCE": ("input", "source"),
        f"{_ENV_PREFIX}INPUT_RESOLUTION": ("input", "resolution"),
        f"{_ENV_PREFIX}VISUALIZATION_ENABLE_HEATMAP": ("visualization", "enable_heatmap"),
        f"{_ENV_PREFIX}VISUALIZATION_ENABLE_TRACKING": ("visualization", "enable_tracking"),
    }

    for env_var, (section, key) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            raw.setdefault(section, {})[key] = value
            logger.debug("Config override from env: %s=%s", env_var, value)

    return raw


# ---------------------------------------------------------------------------
# Model options
# ---------------------------------------------------------------------------

def _resolve(path: Optional[str]) -> Optional[str]:
    if path is None:
        return None
    resolved = Path(path)
    if not resolved.is_absolute():
        resolved = _PROJECT_ROOT / resolved
    return str(resolved)


def model_options(config: ModelConfig, family=None) -> Dict[str, object]:
    """Build the option mapping passed to ModelGateway.load for a family.

    Relative paths are resolved against the project root. The custom
    family only gets a ``model_path`` when one is configured, so a
    missing custom model surfaces as a load error.
    """
    family = ModelFamily.parse(family if family is not None else config.family)
    options: Dict[str, object] = {"backend": config.backend}

    if family is ModelFamily.GENERAL:
        options["model_path"] = _resolve(config.general_model_path)
        options["config_path"] = _resolve(config.general_config_path)
    elif family is ModelFamily.FACE:
        options["prototxt_path"] = _resolve(config.face_prototxt_path)
        options["weights_path"] = _resolve(config.face_weights_path)
    elif config.custom_model_path is not None:
        options["model_path"] = _resolve(config.custom_model_path)
        if config.custom_config_path is not None:
            options["config_path"] = _resolve(config.custom_config_path)

    return options


def with_overrides(config: AppConfig, section: str, **values) -> AppConfig:
    """Return a copy of ``config`` with keys of one section replaced.

    None values are ignored so unset CLI flags leave the config alone.

    Raises:
        ValueError: If the resulting configuration is invalid.
    """
    values = {k: v for k, v in values.items() if v is not None}
    if not values:
        return config
    updated = replace(config, **{section: replace(getattr(config, section), **values)})
    _validate(updated)
    return updated


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------

def load_config(config_path: Optional[str] = None) -> AppConfig:
    """Load and validate application configuration.

    Precedence (highest -> lowest):
        Environment variables > YAML file > Hard-coded defaults

    Args:
        config_path: Path to a YAML configuration file. If None,
                     the system runs entirely on defaults (safe for
                     programmatic usage).

    Returns:
        A validated, frozen AppConfig instance.

    Raises:
        FileNotFoundError: If config_path is provided but does not exist.
        ValueError: If any configuration value is invalid.
        yaml.YAMLError: If the YAML file is malformed.
    """
    raw: dict = {}

    # --- Layer 1: YAML file ---
    if config_path is not None:
        resolved = Path(config_path)
        if not resolved.is_absolute():
            resolved = _PROJECT_ROOT / resolved

        if not resolved.is_file():
            raise FileNotFoundError(
                f"Configuration file not found: {resolved}. "
                f"Provide a valid path or omit to use defaults."
            )

        logger.info("Loading config from: %s", resolved)
        with open(resolved, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

    # --- Layer 2: Environment variable overrides ---
    raw = _apply_env_overrides(raw)

    # --- Build typed configs ---
    config = AppConfig(
        model=_build_model_config(raw.get("model", {})),
        detection=_build_detection_config(raw.get("detection", {})),
        input=_build_input_config(raw.get("input", {})),
        visualization=_build_visualization_config(raw.get("visualization", {})),
        scheduler=_build_scheduler_config(raw.get("scheduler", {})),
    )

    # --- Validate ---
    _validate(config)

    logger.debug("Configuration loaded: %s", config)
    return config
