import logging
import math
from typing import List, Optional, Sequence

import numpy as np

from .errors import InvalidArgumentError
from .types import DETECTION_STRIDE, NUM_MASK_COEFFS, Detection

logger = logging.getLogger(__name__)

DEFAULT_MAX_DETECTIONS = 1000


def detection_buffer_size(max_detections: int = DEFAULT_MAX_DETECTIONS) -> int:
    """Number of floats in a raw detection buffer: count element + fixed-stride records."""
    return 1 + max_detections * DETECTION_STRIDE


def nms(boxes: np.ndarray, scores: np.ndarray, iou_threshold: float) -> np.ndarray:
    """
    Greedy NumPy NMS. Expects boxes shape (N,4) in xyxy and scores shape (N,).
    Returns indices of boxes to keep, highest score first.

    Equal scores are ordered by ascending x1 so the result is reproducible.
    A later box is suppressed only when its IoU with a kept box is strictly
    greater than `iou_threshold`.
    """

    if boxes.size == 0:
        return np.empty((0,), dtype=np.int64)

    x1 = boxes[:, 0]
    y1 = boxes[:, 1]
    x2 = boxes[:, 2]
    y2 = boxes[:, 3]
    # Inverted boxes get zero area instead of a negative one.
    areas = np.maximum(0.0, x2 - x1) * np.maximum(0.0, y2 - y1)

    # lexsort: last key is primary
    order = np.lexsort((x1, -scores))
    keep = []

    while order.size > 0:
        i = order[0]
        keep.append(i)
        rest = order[1:]

        xx1 = np.maximum(x1[i], x1[rest])
        yy1 = np.maximum(y1[i], y1[rest])
        xx2 = np.minimum(x2[i], x2[rest])
        yy2 = np.minimum(y2[i], y2[rest])

        w = np.maximum(0.0, xx2 - xx1)
        h = np.maximum(0.0, yy2 - yy1)
        inter = w * h
        union = areas[i] + areas[rest] - inter
        iou = np.divide(inter, union, out=np.zeros_like(inter), where=union > 0)

        order = rest[iou <= iou_threshold]

    return np.array(keep, dtype=np.int64)


def box_iou(a: Sequence[float], b: Sequence[float]) -> float:
    """IoU of two (x, y, w, h) boxes. Disjoint, degenerate or inverted boxes give 0.0."""

    ax1, ay1, ax2, ay2 = a[0], a[1], a[0] + a[2], a[1] + a[3]
    bx1, by1, bx2, by2 = b[0], b[1], b[0] + b[2], b[1] + b[3]

    iw = min(ax2, bx2) - max(ax1, bx1)
    ih = min(ay2, by2) - max(ay1, by1)
    if iw <= 0 or ih <= 0:
        return 0.0
    inter = iw * ih
    union = max(0.0, a[2]) * max(0.0, a[3]) + max(0.0, b[2]) * max(0.0, b[3]) - inter
    if union <= 0:
        return 0.0
    return float(inter / union)


def _as_buffer(raw) -> np.ndarray:
    if raw is None:
        raise InvalidArgumentError("raw detection buffer is required.")
    buf = np.asarray(raw, dtype=np.float32).ravel()
    if buf.size == 0:
        raise InvalidArgumentError("raw detection buffer is empty (missing the count element).")
    return buf


def _record_count(buf: np.ndarray, max_detections: int) -> int:
    raw_count = float(buf[0])
    if not math.isfinite(raw_count) or raw_count <= 0:
        return 0

    count = int(raw_count)
    if count > max_detections:
        logger.warning("Detection count %d exceeds max_detections=%d; clamping.", count, max_detections)
        count = max_detections

    available = (buf.size - 1) // DETECTION_STRIDE
    if count > available:
        logger.warning("Detection count %d exceeds the %d records present in the buffer; clamping.", count, available)
        count = available
    return count


def _records(buf: np.ndarray, max_detections: int) -> np.ndarray:
    if max_detections < 0:
        raise InvalidArgumentError(f"max_detections must be >= 0 (got {max_detections}).")
    n = _record_count(buf, max_detections)
    records = buf[1 : 1 + n * DETECTION_STRIDE].reshape(n, DETECTION_STRIDE)
    # A record without a usable class id cannot be grouped.
    return records[np.isfinite(records[:, 5])]


def _to_detections(records: np.ndarray) -> List[Detection]:
    return [
        Detection(
            bbox=tuple(rec[0:4].tolist()),
            confidence=float(rec[4]),
            class_id=int(rec[5]),
            mask_coeffs=tuple(rec[6:DETECTION_STRIDE].tolist()),
        )
        for rec in records
    ]


def parse_detections(raw, max_detections: int = DEFAULT_MAX_DETECTIONS) -> List[Detection]:
    """
    Read the first N fixed-stride records of a raw detection buffer without filtering.

    `raw[0]` holds N; it is clamped to `max_detections` and to the number of
    complete records actually present. Entries past N are ignored.
    """

    return _to_detections(_records(_as_buffer(raw), max_detections))


def parse_and_suppress(
    raw,
    confidence_threshold: float,
    iou_threshold: float = 0.5,
    max_detections: int = DEFAULT_MAX_DETECTIONS,
) -> List[Detection]:
    """
    Parse a raw detection buffer and run class-wise NMS.

    - records with confidence <= threshold or NaN are dropped silently
    - survivors are grouped by class id (ascending); suppression never crosses classes
    - within a class: confidence descending, ties by ascending bbox x
    - groups are concatenated in class order without a global re-sort
    """

    records = _records(_as_buffer(raw), max_detections)
    if records.shape[0] == 0:
        return []

    conf = records[:, 4]
    # Compare in the buffer's precision so a value equal to the threshold is dropped.
    keep = ~np.isnan(conf) & (conf > np.float32(confidence_threshold))
    records = records[keep]
    if records.shape[0] == 0:
        return []

    class_ids = records[:, 5].astype(np.int64)
    out: List[Detection] = []
    for cls in np.unique(class_ids):
        group = records[class_ids == cls]
        xywh = group[:, 0:4]
        xyxy = np.concatenate([xywh[:, 0:2], xywh[:, 0:2] + xywh[:, 2:4]], axis=1)
        keep_idx = nms(xyxy, group[:, 4], iou_threshold)
        out.extend(_to_detections(group[keep_idx]))

    logger.debug("NMS kept %d of %d candidates across %d classes.", len(out), records.shape[0], np.unique(class_ids).size)
    return out


def batch_parse_and_suppress(
    raw,
    batch_size: int,
    buffer_stride: int,
    confidence_threshold: float,
    iou_threshold: float = 0.5,
    max_detections: int = DEFAULT_MAX_DETECTIONS,
) -> List[List[Detection]]:
    """
    Run `parse_and_suppress` on each image of a batched buffer.

    Image i occupies `raw[i * buffer_stride : (i + 1) * buffer_stride]`.
    """

    if batch_size <= 0:
        raise InvalidArgumentError(f"batch_size must be > 0 (got {batch_size}).")
    if buffer_stride <= 0:
        raise InvalidArgumentError(f"buffer_stride must be > 0 (got {buffer_stride}).")

    buf = _as_buffer(raw)
    if buf.size < batch_size * buffer_stride:
        raise InvalidArgumentError(
            f"Buffer holds {buf.size} floats, expected at least {batch_size} x {buffer_stride}."
        )

    return [
        parse_and_suppress(
            buf[i * buffer_stride : (i + 1) * buffer_stride],
            confidence_threshold,
            iou_threshold=iou_threshold,
            max_detections=max_detections,
        )
        for i in range(batch_size)
    ]


def detections_to_buffer(detections: Sequence[Detection], capacity: Optional[int] = None) -> np.ndarray:
    """
    Write detections back into the raw buffer layout.

    `capacity` pads the buffer to a fixed number of records, like an engine output.
    """

    n = len(detections)
    if capacity is None:
        capacity = n
    if capacity < n:
        raise InvalidArgumentError(f"capacity {capacity} is smaller than the {n} detections given.")

    buf = np.zeros(detection_buffer_size(capacity), dtype=np.float32)
    buf[0] = n
    for i, det in enumerate(detections):
        coeffs = det.mask_coeffs[:NUM_MASK_COEFFS]
        start = 1 + i * DETECTION_STRIDE
        buf[start : start + 4] = det.bbox
        buf[start + 4] = det.confidence
        buf[start + 5] = det.class_id
        buf[start + 6 : start + 6 + len(coeffs)] = coeffs
    return buf
