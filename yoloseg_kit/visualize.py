from __future__ import annotations

from typing import Mapping, Optional, Tuple

import numpy as np

from .errors import InvalidArgumentError
from .letterbox import require_cv2, unletterbox_mask, unletterbox_rect
from .result import ResultSet

_PALETTE = [
    (255, 56, 56),
    (255, 157, 151),
    (255, 112, 31),
    (255, 178, 29),
    (207, 210, 49),
    (72, 249, 10),
    (146, 204, 23),
    (61, 219, 134),
    (26, 147, 52),
    (0, 212, 187),
    (44, 153, 168),
    (0, 194, 255),
    (52, 69, 147),
    (100, 115, 255),
    (0, 24, 236),
    (132, 56, 255),
    (82, 0, 133),
    (203, 56, 255),
    (255, 149, 200),
    (255, 55, 199),
]


def color_for_class_id(class_id: int) -> Tuple[int, int, int]:
    """Deterministic BGR color for a class id; the palette is RGB and wraps around."""
    r, g, b = _PALETTE[int(class_id) % len(_PALETTE)]
    return b, g, r


def draw_segmentation(
    image_bgr: np.ndarray,
    result: ResultSet,
    *,
    class_names: Optional[Mapping[int, str]] = None,
    mask_threshold: float = 0.5,
    box_thickness: int = 2,
    font_scale: float = 1.2,
    font_thickness: int = 2,
) -> np.ndarray:
    """
    Draw masks, boxes and labels of `result` on a copy of the original image.

    Boxes and masks are remapped from model-input space with the letterbox
    inverse. Mask pixels above `mask_threshold` inside the box are blended 50/50
    with the class color.
    """

    cv2 = require_cv2("draw_segmentation()")

    if image_bgr is None or not hasattr(image_bgr, "shape"):
        raise InvalidArgumentError("image_bgr must be a NumPy array (BGR).")
    if image_bgr.ndim != 3 or image_bgr.shape[2] != 3:
        raise InvalidArgumentError(f"Expected image shape (H, W, 3), got {getattr(image_bgr, 'shape', None)}")

    out = image_bgr.copy()
    h, w = out.shape[:2]
    model_w, model_h = result.input_size

    for det in result.detections:
        color = color_for_class_id(det.class_id)
        r = unletterbox_rect(det.bbox, model_w, model_h, w, h)
        x1, y1, x2, y2 = r.as_xyxy()

        if det.mask is not None and r.area > 0:
            full = unletterbox_mask(det.mask.data, model_w, model_h, w, h)
            roi = out[y1:y2, x1:x2]
            hit = full[y1:y2, x1:x2] > mask_threshold
            blended = roi[hit] // 2 + np.array(color, dtype=np.uint8) // 2
            roi[hit] = blended

        cv2.rectangle(out, (x1, y1), (x2, y2), color, thickness=box_thickness)

        name = class_names.get(det.class_id, str(det.class_id)) if class_names else str(det.class_id)
        label = f"{name} {det.confidence:.2f}"
        (tw, th), _ = cv2.getTextSize(label, cv2.FONT_HERSHEY_PLAIN, font_scale, font_thickness)
        cv2.rectangle(out, (x1, y1 - th), (x1 + tw, y1 + th), color, thickness=-1)
        cv2.putText(
            out,
            label,
            (x1, y1 + 4),
            cv2.FONT_HERSHEY_PLAIN,
            font_scale,
            (255, 255, 255),
            thickness=font_thickness,
        )

    return out
