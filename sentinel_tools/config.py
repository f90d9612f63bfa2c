#
# config.py: configuration support
#
# Copyright DeGirum Corporation 2025
# All rights reserved
#
# Implements configuration classes for the detection pipeline and the alert dispatcher
#

"""
Configuration Module Overview
=============================

This module defines the configuration consumed by the detection pipeline and the alert dispatcher.
Configuration is loaded from a YAML file or a dictionary, validated against a YAML/JSON schema,
and then overridden by ``SENTINEL_*`` environment variables (see `environment.py`).

Configuration Options:
    ```yaml
    model:
      name: yolo11n.onnx           # known model name (see tensor_decoder.model_registry)
      layout: ANCHOR_MAJOR         # required for unknown models
      input_size: [256, 256]       # required for unknown models
      confidence_threshold: 0.25
      iou_threshold: 0.4
    detection:
      allowed_classes: [0, 2]      # omit to allow all classes
      min_score: 0.25
      min_score_per_class: {0: 0.5}
    frame_loop:
      cap_fps: 30                  # omit or 0 for unlimited
      display_size: [640, 480]
    alerts:
      webhook_enabled: true
      webhook_url: https://example.com/hook
      batch_enabled: true
      batch_window_ms: 1500
      max_retries: 3
      retry_backoff_ms: 1500
      hmac_key: secret
      zone_cooldown_ms: 5000
      tripwire_cooldown_ms: 3000
      timeout_s: 10
    ```

Environment Overrides:
    ``SENTINEL_CAP_FPS``, ``SENTINEL_ALERT_WEBHOOK_ENABLED``, ``SENTINEL_ALERT_WEBHOOK``,
    ``SENTINEL_ALERT_BATCH_ENABLED``, ``SENTINEL_ALERT_BATCH_WINDOW_MS``,
    ``SENTINEL_ALERT_MAX_RETRIES``, ``SENTINEL_ALERT_RETRY_BACKOFF_MS``, ``SENTINEL_ALERT_HMAC_KEY``.
    Boolean variables are true only for the literal ``true``; numeric variables which cannot be
    parsed are ignored.

Key Classes:
    - `SentinelConfig`: Complete configuration; use `SentinelConfig.load()` to create
    - `ModelConfig`, `DetectionConfig`, `FrameLoopConfig`, `AlertConfig`: Configuration sections
    - `ConfigError`: Raised for invalid configuration
"""

import copy, os
import jsonschema
import yaml
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union
from . import environment as env
from .detections import coco_classes
from .tensor_decoder import (
    ModelInfo,
    TensorLayout,
    default_confidence_threshold,
    default_iou_threshold,
    model_registry,
)
from .zone_evaluator import DetectionFilter, default_min_score


class ConfigError(Exception):
    """Raised when configuration is invalid."""


@dataclass
class ModelConfig:
    """Detection model configuration.

    Attributes:
        name (str): Model name; known names resolve layout and input size from `model_registry`.
        layout (TensorLayout, optional): Output tensor layout; overrides the registry.
        input_size (Tuple[int, int], optional): Model input size ``(width, height)``; overrides the registry.
        class_labels (List[str], optional): Class label table; defaults to the COCO labels.
        confidence_threshold (float): Decode-time confidence threshold.
        iou_threshold (float): Non-maximum suppression IoU threshold.
    """

    name: str = "yolo11n.onnx"
    layout: Optional[TensorLayout] = None
    input_size: Optional[Tuple[int, int]] = None
    class_labels: Optional[List[str]] = None
    confidence_threshold: float = default_confidence_threshold
    iou_threshold: float = default_iou_threshold

    @property
    def labels(self) -> List[str]:
        return list(self.class_labels) if self.class_labels else list(coco_classes)

    def model_info(self) -> ModelInfo:
        """Resolve model description.

        Returns:
            Model description with explicit settings taking precedence over the registry.

        Raises:
            ConfigError: If the model is unknown and layout or input size is not configured.
        """
        known = model_registry.get(self.name)
        layout = self.layout or (known.layout if known else None)
        input_size = self.input_size or (known.input_size if known else None)
        if layout is None or input_size is None:
            raise ConfigError(
                f"Model '{self.name}' is not in the model registry: both layout and input_size must be configured"
            )
        return ModelInfo(self.name, layout, (int(input_size[0]), int(input_size[1])))


@dataclass
class DetectionConfig:
    """Detection filter configuration.

    Attributes:
        allowed_classes (List[int], optional): Class IDs allowed to trigger rules; None allows all.
        min_score (float): Default minimum score.
        min_score_per_class (Dict[int, float]): Per-class minimum score overrides.
    """

    allowed_classes: Optional[List[int]] = None
    min_score: float = default_min_score
    min_score_per_class: Dict[int, float] = field(default_factory=dict)

    def to_filter(self) -> DetectionFilter:
        return DetectionFilter(
            allowed_classes=(
                set(self.allowed_classes) if self.allowed_classes is not None else None
            ),
            min_score=self.min_score,
            min_score_per_class=dict(self.min_score_per_class),
        )


@dataclass
class FrameLoopConfig:
    """Frame loop configuration.

    Attributes:
        cap_fps (float, optional): Maximum frame rate; None or 0 means unlimited.
        display_size (Tuple[int, int]): Display size ``(width, height)`` detections are scaled to.
    """

    cap_fps: Optional[float] = None
    display_size: Tuple[int, int] = (640, 480)


@dataclass
class AlertConfig:
    """Alert dispatcher configuration.

    Attributes:
        webhook_enabled (bool): Enable webhook delivery.
        webhook_url (str, optional): Webhook URL.
        batch_enabled (bool): Aggregate alerts and deliver them periodically.
        batch_window_ms (int): Batch flush period in milliseconds.
        max_retries (int): Maximum number of consecutive failed batch flushes to retry.
        retry_backoff_ms (int): Base retry delay in milliseconds.
        hmac_key (str, optional): Payload signing key; no signature is sent when not set.
        zone_cooldown_ms (int): Minimum time between alerts for the same zone and class.
        tripwire_cooldown_ms (int): Minimum time between alerts for the same tripwire and class.
        timeout_s (float): HTTP request timeout in seconds.
    """

    webhook_enabled: bool = False
    webhook_url: Optional[str] = None
    batch_enabled: bool = False
    batch_window_ms: int = 1500
    max_retries: int = 3
    retry_backoff_ms: int = 1500
    hmac_key: Optional[str] = None
    zone_cooldown_ms: int = 5000
    tripwire_cooldown_ms: int = 3000
    timeout_s: float = 10.0


@dataclass
class SentinelConfig:
    """Complete configuration."""

    model: ModelConfig = field(default_factory=ModelConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    frame_loop: FrameLoopConfig = field(default_factory=FrameLoopConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)

    # configuration file dictionary keys
    key_model = "model"
    key_detection = "detection"
    key_frame_loop = "frame_loop"
    key_alerts = "alerts"

    """
    YAML/JSON schema for validating configuration files.
    All sections and all keys are optional; unknown keys are rejected to catch typos.
    """
    schema_text = f"""
type: object
additionalProperties: false
properties:
  {key_model}:
    type: object
    additionalProperties: false
    properties:
      name:
        type: string
      layout:
        type: string
        enum: [{', '.join(m.name for m in TensorLayout)}]
      input_size:
        type: array
        items:
          type: integer
          minimum: 1
        minItems: 2
        maxItems: 2
      class_labels:
        type: array
        items:
          type: string
      confidence_threshold:
        type: number
        minimum: 0
        maximum: 1
      iou_threshold:
        type: number
        minimum: 0
        maximum: 1
  {key_detection}:
    type: object
    additionalProperties: false
    properties:
      allowed_classes:
        type: [array, "null"]
        items:
          type: integer
          minimum: 0
      min_score:
        type: number
        minimum: 0
        maximum: 1
      min_score_per_class:
        type: object
        patternProperties:
          "^[0-9]+$":
            type: number
            minimum: 0
            maximum: 1
        additionalProperties: false
  {key_frame_loop}:
    type: object
    additionalProperties: false
    properties:
      cap_fps:
        type: [number, "null"]
        minimum: 0
      display_size:
        type: array
        items:
          type: integer
          minimum: 1
        minItems: 2
        maxItems: 2
  {key_alerts}:
    type: object
    additionalProperties: false
    properties:
      webhook_enabled:
        type: boolean
      webhook_url:
        type: [string, "null"]
      batch_enabled:
        type: boolean
      batch_window_ms:
        type: integer
        minimum: 1
      max_retries:
        type: integer
        minimum: 0
      retry_backoff_ms:
        type: integer
        minimum: 1
      hmac_key:
        type: [string, "null"]
      zone_cooldown_ms:
        type: integer
        minimum: 0
      tripwire_cooldown_ms:
        type: integer
        minimum: 0
      timeout_s:
        type: number
        exclusiveMinimum: 0
"""

    @classmethod
    def load(
        cls,
        *,
        config: Optional[Dict[str, Any]] = None,
        config_file: Union[Path, str, None] = None,
        use_env: bool = True,
    ) -> "SentinelConfig":
        """Load configuration from dictionary or YAML file.

        Args:
            config (dict, optional): Configuration dictionary. If provided, overrides `config_file`.
            config_file (Union[Path, str], optional): Path to YAML configuration file.
                If neither is given, defaults are used.
            use_env (bool, optional): Apply ``SENTINEL_*`` environment variable overrides.

        Returns:
            Configuration object.

        Raises:
            ConfigError: If the configuration file cannot be read or does not match the schema.
        """
        if config is None:
            if config_file is not None:
                try:
                    with open(config_file, "r") as f:
                        config = yaml.safe_load(f)
                except (OSError, yaml.YAMLError) as e:
                    raise ConfigError(
                        f"Failed to read configuration file {config_file}: {e}"
                    ) from e
            if config is None:
                config = {}
        else:
            config = copy.deepcopy(config)

        # YAML keys like `0:` come as integers; schema checks them as strings
        detection = (
            config.get(cls.key_detection) if isinstance(config, dict) else None
        )
        if isinstance(detection, dict) and isinstance(
            detection.get("min_score_per_class"), dict
        ):
            detection["min_score_per_class"] = {
                str(k): v for k, v in detection["min_score_per_class"].items()
            }

        # validate config structure by schema
        schema = yaml.safe_load(cls.schema_text)
        try:
            jsonschema.validate(instance=config, schema=schema)
        except jsonschema.ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e.message}") from e

        ret = cls.from_dict(config)
        if use_env:
            ret.apply_env()
        return ret

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "SentinelConfig":
        """Create configuration from a validated configuration dictionary."""
        model = dict(config.get(cls.key_model, {}))
        if "layout" in model:
            model["layout"] = TensorLayout[model["layout"]]
        if "input_size" in model:
            model["input_size"] = tuple(model["input_size"])

        detection = dict(config.get(cls.key_detection, {}))
        if "min_score_per_class" in detection:
            detection["min_score_per_class"] = {
                int(k): float(v) for k, v in detection["min_score_per_class"].items()
            }

        frame_loop = dict(config.get(cls.key_frame_loop, {}))
        if "display_size" in frame_loop:
            frame_loop["display_size"] = tuple(frame_loop["display_size"])

        return cls(
            model=ModelConfig(**model),
            detection=DetectionConfig(**detection),
            frame_loop=FrameLoopConfig(**frame_loop),
            alerts=AlertConfig(**config.get(cls.key_alerts, {})),
        )

    def apply_env(self):
        """Override configuration with ``SENTINEL_*`` environment variables which are set."""

        cap_fps = env.get_number_var(env.var_CapFps)
        if cap_fps is not None:
            self.frame_loop.cap_fps = cap_fps

        alerts = self.alerts
        webhook_enabled = env.get_bool_var(env.var_WebhookEnabled)
        if webhook_enabled is not None:
            alerts.webhook_enabled = webhook_enabled
        batch_enabled = env.get_bool_var(env.var_BatchEnabled)
        if batch_enabled is not None:
            alerts.batch_enabled = batch_enabled

        url = os.getenv(env.var_WebhookUrl)
        if url:
            alerts.webhook_url = url
        hmac_key = os.getenv(env.var_HmacKey)
        if hmac_key:
            alerts.hmac_key = hmac_key

        for var, attr in (
            (env.var_BatchWindowMs, "batch_window_ms"),
            (env.var_MaxRetries, "max_retries"),
            (env.var_RetryBackoffMs, "retry_backoff_ms"),
        ):
            value = env.get_number_var(var)
            if value is not None:
                setattr(alerts, attr, int(value))

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a dictionary matching the configuration file schema."""
        ret = asdict(self)
        model = ret[self.key_model]
        model["layout"] = self.model.layout.name if self.model.layout else None
        model["input_size"] = (
            list(self.model.input_size) if self.model.input_size else None
        )
        # optional model keys are omitted rather than nulled
        ret[self.key_model] = {k: v for k, v in model.items() if v is not None}
        ret[self.key_frame_loop]["display_size"] = list(self.frame_loop.display_size)
        ret[self.key_detection]["min_score_per_class"] = {
            str(k): v for k, v in self.detection.min_score_per_class.items()
        }
        return ret


def _validate_config_run(args):
    """
    Load and validate configuration file, then print effective configuration.

    Args:
        args: argparse command line arguments
    """
    env.reload_env()
    cfg = SentinelConfig.load(config_file=args.config_file, use_env=not args.no_env)
    cfg.model.model_info()  # check that the model can be resolved
    print(yaml.safe_dump(cfg.to_dict(), sort_keys=False))


def _validate_config_args(parser):
    """
    Define validate_config subcommand arguments

    Args:
        parser: argparse parser object to be stuffed with args
    """
    parser.add_argument(
        "config_file",
        type=str,
        help="path to YAML configuration file",
    )
    parser.add_argument(
        "--no-env",
        action="store_true",
        help="do not apply SENTINEL_* environment variable overrides",
    )
    parser.set_defaults(func=_validate_config_run)
