import numpy as np

from .errors import InvalidArgumentError
from .nms import DEFAULT_MAX_DETECTIONS, detection_buffer_size
from .types import DETECTION_STRIDE, NUM_MASK_COEFFS


def anchors_to_detection_buffer(
    preds: np.ndarray,
    num_mask_coeffs: int = NUM_MASK_COEFFS,
    max_detections: int = DEFAULT_MAX_DETECTIONS,
    conf_floor: float = 0.0,
) -> np.ndarray:
    """
    Convert a raw YOLO segmentation head into the fixed-stride detection buffer.

    Supported layouts (single image):
    - (4 + C + 32, A): e.g. 116 x 8400 for an 80-class seg export, channels first
    - (A, 4 + C + 32): same, anchors first
    - flat 1-D: already a detection buffer (engines with on-device decode), returned as a copy

    Rows are [cx, cy, w, h, class scores..., mask coefficients...]. The best
    class score becomes the confidence, boxes become top-left (x, y, w, h),
    records are ordered by confidence and truncated to `max_detections`.
    """

    p = np.asarray(preds, dtype=np.float32)
    if p.ndim == 3:
        if p.shape[0] != 1:
            raise InvalidArgumentError(f"Batch > 1 is not supported (got shape {p.shape}). Pass one image at a time.")
        p = p[0]

    if p.ndim == 1:
        return p.copy()
    if p.ndim != 2:
        raise InvalidArgumentError(f"Unsupported YOLO output shape: {p.shape}")

    rows, cols = p.shape
    min_rows = 4 + 1 + num_mask_coeffs
    small, large = (rows, cols) if rows <= cols else (cols, rows)
    if small < min_rows:
        raise InvalidArgumentError(
            f"YOLO seg output needs at least {min_rows} values per anchor (4 box + classes + {num_mask_coeffs}), got {p.shape}."
        )
    # Same rule as the box decoder: anchors outnumber channels at least 4:1.
    if large / small < 4:
        raise InvalidArgumentError(f"Ambiguous YOLO seg output shape {p.shape}: cannot tell channels from anchors.")
    if rows > cols:
        p = p.T

    boxes = p[0:4, :].T  # (A, 4) as cx, cy, w, h
    class_scores = p[4:-num_mask_coeffs, :]  # (C, A)
    coeffs = p[-num_mask_coeffs:, :].T  # (A, 32)

    class_ids = np.argmax(class_scores, axis=0)
    scores = class_scores[class_ids, np.arange(class_scores.shape[1])]

    keep = scores > conf_floor
    boxes, scores, class_ids, coeffs = boxes[keep], scores[keep], class_ids[keep], coeffs[keep]

    order = np.argsort(-scores, kind="stable")[:max_detections]
    n = int(order.size)

    buf = np.zeros(detection_buffer_size(max_detections), dtype=np.float32)
    buf[0] = n
    records = buf[1 : 1 + n * DETECTION_STRIDE].reshape(n, DETECTION_STRIDE)

    cx, cy, w_box, h_box = boxes[order].T
    records[:, 0] = cx - w_box / 2
    records[:, 1] = cy - h_box / 2
    records[:, 2] = w_box
    records[:, 3] = h_box
    records[:, 4] = scores[order]
    records[:, 5] = class_ids[order]
    records[:, 6:] = coeffs[order]
    return buf
