from __future__ import annotations

import json
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Tuple, Union

from .errors import InvalidArgumentError
from .nms import DEFAULT_MAX_DETECTIONS
from .types import NUM_MASK_COEFFS

PathLike = Union[str, Path]


@dataclass(frozen=True)
class SessionConfig:
    input_width: int = 640
    input_height: int = 640
    conf_threshold: float = 0.5
    iou_threshold: float = 0.45
    max_detections: int = DEFAULT_MAX_DETECTIONS
    # model input size / prototype grid size
    mask_downsample: int = 4
    num_mask_coeffs: int = NUM_MASK_COEFFS
    # Store masks at model-input resolution instead of prototype resolution.
    upsample_masks: bool = True
    mask_threshold: float = 0.5
    letterbox_color: Tuple[int, int, int] = (114, 114, 114)

    def __post_init__(self) -> None:
        if self.input_width <= 0 or self.input_height <= 0:
            raise InvalidArgumentError("input_width and input_height must be > 0")
        if self.mask_downsample <= 0:
            raise InvalidArgumentError("mask_downsample must be > 0")
        if self.input_width % self.mask_downsample or self.input_height % self.mask_downsample:
            raise InvalidArgumentError("input size must be a multiple of mask_downsample")
        if not 0.0 <= self.conf_threshold <= 1.0:
            raise InvalidArgumentError("conf_threshold must be within [0, 1]")
        if not 0.0 <= self.iou_threshold <= 1.0:
            raise InvalidArgumentError("iou_threshold must be within [0, 1]")
        if self.max_detections <= 0:
            raise InvalidArgumentError("max_detections must be > 0")
        if self.num_mask_coeffs != NUM_MASK_COEFFS:
            raise InvalidArgumentError(f"num_mask_coeffs must be {NUM_MASK_COEFFS}")
        if not 0.0 <= self.mask_threshold <= 1.0:
            raise InvalidArgumentError("mask_threshold must be within [0, 1]")
        if len(self.letterbox_color) != 3 or any(not 0 <= c <= 255 for c in self.letterbox_color):
            raise InvalidArgumentError("letterbox_color must be three values in [0, 255]")

    @property
    def input_size(self) -> Tuple[int, int]:
        return self.input_width, self.input_height

    @property
    def proto_size(self) -> Tuple[int, int]:
        return self.input_width // self.mask_downsample, self.input_height // self.mask_downsample


def _coerce(key: str, value: Any, default: Any) -> Any:
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise InvalidArgumentError(f"{key} must be a boolean")
        return value
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidArgumentError(f"{key} must be an integer")
        return int(value)
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidArgumentError(f"{key} must be a number")
        return float(value)
    if isinstance(default, tuple):
        if not isinstance(value, list) or any(isinstance(v, bool) or not isinstance(v, int) for v in value):
            raise InvalidArgumentError(f"{key} must be a list of integers")
        return tuple(value)
    return value


def load_session_config(path: PathLike) -> SessionConfig:
    """
    Load a `SessionConfig` from a JSON object. Missing keys keep their defaults.

        {"conf_threshold": 0.25, "iou_threshold": 0.5, "upsample_masks": false}
    """

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Session config not found: {path}")
    raw = path.read_text(encoding="utf-8")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise InvalidArgumentError(f"Invalid session config JSON: {path}") from exc
    if not isinstance(payload, dict):
        raise InvalidArgumentError("Session config must be a JSON object")

    defaults: Dict[str, Any] = {f.name: f.default for f in fields(SessionConfig)}
    unknown = sorted(set(payload.keys()) - set(defaults))
    if unknown:
        raise InvalidArgumentError(f"Unknown session config keys: {unknown}")

    values = {key: _coerce(key, value, defaults[key]) for key, value in payload.items()}
    return SessionConfig(**values)
