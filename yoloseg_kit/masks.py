"""
Per-detection mask reconstruction from the shared prototype tensor.

Each mask is sigmoid(sum_j coeff[j] * proto[j]) evaluated only inside the
detection box (mapped to the prototype grid); everything else stays 0. Masks
are produced at prototype resolution, upsampling is left to the caller.
"""

from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np

from .errors import InvalidArgumentError
from .letterbox import require_cv2
from .types import NUM_MASK_COEFFS, Detection


@dataclass
class DecodedMask:
    """Dense probability grid, values in [0, 1]."""

    data: np.ndarray

    @property
    def width(self) -> int:
        return int(self.data.shape[1])

    @property
    def height(self) -> int:
        return int(self.data.shape[0])

    def upsample(self, width: int, height: int) -> np.ndarray:
        if width <= 0 or height <= 0:
            raise InvalidArgumentError(f"Upsample size must be positive (got {width}x{height}).")
        if (width, height) == (self.width, self.height):
            return self.data.copy()
        cv2 = require_cv2("DecodedMask.upsample()")
        return cv2.resize(self.data, (int(width), int(height)), interpolation=cv2.INTER_LINEAR)


def downscale_rect(
    bbox: Sequence[float],
    model_w: int,
    model_h: int,
    factor: float,
    grid_w: int,
    grid_h: int,
) -> Tuple[int, int, int, int]:
    """
    Map an (x, y, w, h) model-input box onto the prototype grid.

    Returns integer (x, y, w, h) clamped to the grid; boxes that fall outside
    it (or are inverted / non-finite) come back with zero width or height.
    """

    x, y, w, h = (float(v) for v in bbox)
    if not all(np.isfinite((x, y, w, h))):
        return 0, 0, 0, 0

    left = max(x, 0.0) / factor
    top = max(y, 0.0) / factor
    right = min(x + w, float(model_w)) / factor
    bottom = min(y + h, float(model_h)) / factor

    gx = min(max(int(left), 0), grid_w)
    gy = min(max(int(top), 0), grid_h)
    gw = max(0, min(int(right - left), grid_w - gx))
    gh = max(0, min(int(bottom - top), grid_h - gy))
    return gx, gy, gw, gh


def _sigmoid(x: np.ndarray) -> np.ndarray:
    # exp overflow saturates to inf, which maps cleanly to 0.0
    with np.errstate(over="ignore"):
        return (1.0 / (1.0 + np.exp(-x))).astype(np.float32)


def as_prototypes(proto, grid_w: int, grid_h: int, num_mask_coeffs: int = NUM_MASK_COEFFS) -> np.ndarray:
    """Validate a prototype buffer and view it as (channels, grid_h, grid_w)."""
    if proto is None:
        raise InvalidArgumentError("prototype mask buffer is required.")
    arr = np.asarray(proto, dtype=np.float32)
    expected = num_mask_coeffs * grid_h * grid_w
    if arr.size != expected:
        raise InvalidArgumentError(
            f"Prototype buffer has {arr.size} floats, expected {num_mask_coeffs} x {grid_h} x {grid_w} = {expected}."
        )
    return arr.reshape(num_mask_coeffs, grid_h, grid_w)


def decode_masks(
    proto,
    detections: Sequence[Detection],
    model_w: int = 640,
    model_h: int = 640,
    downsample: int = 4,
    num_mask_coeffs: int = NUM_MASK_COEFFS,
) -> List[DecodedMask]:
    """
    Decode one mask per detection, same order and length as `detections`.

    Args:
        proto: prototype tensor, flat or shaped (32, H/4, W/4) / (1, 32, H/4, W/4)
        detections: parser output in model-input space
        model_w, model_h: model input size
        downsample: model input size / prototype grid size
    """

    if model_w <= 0 or model_h <= 0:
        raise InvalidArgumentError(f"Model size must be positive (got {model_w}x{model_h}).")
    if downsample <= 0:
        raise InvalidArgumentError(f"downsample must be > 0 (got {downsample}).")

    grid_w, grid_h = model_w // downsample, model_h // downsample
    protos = as_prototypes(proto, grid_w, grid_h, num_mask_coeffs)

    masks: List[DecodedMask] = []
    for det in detections:
        coeffs = np.asarray(det.mask_coeffs, dtype=np.float32)
        if coeffs.size != num_mask_coeffs:
            raise InvalidArgumentError(
                f"Detection carries {coeffs.size} mask coefficients, expected {num_mask_coeffs}."
            )

        data = np.zeros((grid_h, grid_w), dtype=np.float32)
        x, y, w, h = downscale_rect(det.bbox, model_w, model_h, downsample, grid_w, grid_h)
        if w > 0 and h > 0:
            region = protos[:, y : y + h, x : x + w]
            logits = np.tensordot(coeffs, region, axes=1)
            data[y : y + h, x : x + w] = _sigmoid(logits)
        masks.append(DecodedMask(data=data))
    return masks
