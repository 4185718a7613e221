import math
from typing import Sequence, Tuple

import numpy as np

from .errors import InvalidArgumentError
from .types import Rect


def require_cv2(feature: str):
    try:
        import cv2  # type: ignore
    except Exception as e:  # pragma: no cover
        raise ImportError(f"OpenCV is required for {feature}. Install with `pip install opencv-python`.") from e
    return cv2


def _check_dims(model_w: int, model_h: int, original_w: int, original_h: int) -> None:
    if model_w <= 0 or model_h <= 0:
        raise InvalidArgumentError(f"Model size must be positive (got {model_w}x{model_h}).")
    if original_w <= 0 or original_h <= 0:
        raise InvalidArgumentError(f"Original image size must be positive (got {original_w}x{original_h}).")


def _round(v: float) -> int:
    # half away from zero
    return int(math.floor(v + 0.5)) if v >= 0 else int(math.ceil(v - 0.5))


def letterbox(
    image: np.ndarray,
    new_shape: Tuple[int, int] = (640, 640),
    color: Tuple[int, int, int] = (114, 114, 114),
):
    """
    Aspect-preserving resize into `new_shape` (width, height) with centred padding.

    This is the forward transform undone by `unletterbox_rect` / `unletterbox_mask`.

    Returns:
        padded: resized + padded image
        ratio: (w_ratio, h_ratio), always equal
        pad: (dw, dh) padding applied to width/height (left/top; right/bottom take the rest)
    """
    cv2 = require_cv2("letterbox()")

    if isinstance(new_shape, int):
        new_shape = (new_shape, new_shape)

    h, w = image.shape[:2]
    new_w, new_h = new_shape
    _check_dims(new_w, new_h, w, h)

    r = min(new_w / w, new_h / h)
    resized_w, resized_h = int(round(w * r)), int(round(h * r))
    dw = (new_w - resized_w) / 2
    dh = (new_h - resized_h) / 2

    if (w, h) != (resized_w, resized_h):
        image = cv2.resize(image, (resized_w, resized_h), interpolation=cv2.INTER_LINEAR)

    top, bottom = int(round(dh - 0.1)), int(round(dh + 0.1))
    left, right = int(round(dw - 0.1)), int(round(dw + 0.1))
    padded = cv2.copyMakeBorder(image, top, bottom, left, right, cv2.BORDER_CONSTANT, value=color)

    return padded, (r, r), (dw, dh)


def unletterbox_rect(
    bbox: Sequence[float],
    model_w: int,
    model_h: int,
    original_w: int,
    original_h: int,
) -> Rect:
    """
    Map an (x, y, w, h) box from letterboxed model input back to original image pixels.

    The padded axis is the one with the larger scale: a relatively wide image
    (scale_y > scale_x) was padded top/bottom, otherwise left/right. The result
    is clamped to the image; non-finite boxes map to an empty rect.
    """

    _check_dims(model_w, model_h, original_w, original_h)

    x, y, w, h = (float(v) for v in bbox)
    if not all(math.isfinite(v) for v in (x, y, w, h)):
        return Rect(0, 0, 0, 0)

    left, top, right, bottom = x, y, x + w, y + h
    scale_x = model_w / original_w
    scale_y = model_h / original_h

    if scale_y > scale_x:
        pad = (model_h - scale_x * original_h) / 2
        top -= pad
        bottom -= pad
        scale = scale_x
    else:
        pad = (model_w - scale_y * original_w) / 2
        left -= pad
        right -= pad
        scale = scale_y

    left, top, right, bottom = left / scale, top / scale, right / scale, bottom / scale

    left = max(0.0, left)
    top = max(0.0, top)
    x0 = min(_round(left), original_w)
    y0 = min(_round(top), original_h)
    width = max(0, min(_round(right - left), original_w - x0))
    height = max(0, min(_round(bottom - top), original_h - y0))
    return Rect(x0, y0, width, height)


def unletterbox_mask(
    mask: np.ndarray,
    model_w: int,
    model_h: int,
    original_w: int,
    original_h: int,
) -> np.ndarray:
    """
    Bring a mask from model-input space (any resolution) to original image size.

    The mask is upsampled to the model input if needed, the padding is cropped
    away and the remaining region is resized to (original_h, original_w).
    """

    _check_dims(model_w, model_h, original_w, original_h)
    cv2 = require_cv2("unletterbox_mask()")

    m = np.asarray(mask, dtype=np.float32)
    if m.ndim != 2:
        raise InvalidArgumentError(f"Expected a 2-D mask, got shape {m.shape}.")
    if m.shape != (model_h, model_w):
        m = cv2.resize(m, (model_w, model_h), interpolation=cv2.INTER_LINEAR)

    scale_x = model_w / original_w
    scale_y = model_h / original_h
    if scale_y > scale_x:
        w = model_w
        h = max(1, int(scale_x * original_h))
        x = 0
        y = (model_h - h) // 2
    else:
        w = max(1, int(scale_y * original_w))
        h = model_h
        x = (model_w - w) // 2
        y = 0

    crop = m[y : y + h, x : x + w]
    return cv2.resize(crop, (original_w, original_h), interpolation=cv2.INTER_LINEAR)
