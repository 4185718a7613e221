"""
Result aggregate handed to callers, and the builder that fills it.

A `ResultSet` owns its detections and their mask buffers until `release()`
(or the end of a `with` block). The builder is all-or-nothing: if anything
fails while copying masks, every buffer copied so far is dropped before the
error propagates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .errors import InvalidArgumentError
from .letterbox import unletterbox_rect
from .masks import DecodedMask
from .timing import Timings
from .types import Detection, Rect


class MaskBuffer:
    """
    Owned float32 pixels of one mask. `release()` drops them.

    Pass `copy=False` only for a freshly allocated array nobody else holds.
    """

    def __init__(self, data: np.ndarray, copy: bool = True):
        arr = np.array(data, dtype=np.float32, copy=True) if copy else np.asarray(data, dtype=np.float32)
        if arr.ndim != 2:
            raise InvalidArgumentError(f"Mask must be 2-D, got shape {arr.shape}.")
        self._data: Optional[np.ndarray] = arr
        self.width = int(arr.shape[1])
        self.height = int(arr.shape[0])

    @property
    def data(self) -> np.ndarray:
        if self._data is None:
            raise InvalidArgumentError("Mask buffer has been released.")
        return self._data

    @property
    def released(self) -> bool:
        return self._data is None

    def release(self) -> None:
        self._data = None
        self.width = 0
        self.height = 0


@dataclass
class ResultDetection:
    bbox: Tuple[float, float, float, float]
    confidence: float
    class_id: int
    mask: Optional[MaskBuffer] = None

    def as_xyxy(self) -> Tuple[float, float, float, float]:
        x, y, w, h = self.bbox
        return x, y, x + w, y + h


@dataclass
class ResultSet:
    """
    Output of one inference call.

    Boxes stay in model-input space; `image_rects()` remaps them to the
    original image on demand.
    """

    detections: Tuple[ResultDetection, ...] = ()
    timings: Timings = field(default_factory=Timings)
    input_size: Tuple[int, int] = (640, 640)
    image_size: Tuple[int, int] = (0, 0)

    @property
    def num_detections(self) -> int:
        return len(self.detections)

    def __len__(self) -> int:
        return self.num_detections

    def __enter__(self) -> "ResultSet":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.release()

    def release(self) -> None:
        """Drop every mask buffer and the detection sequence. Safe to call more than once."""
        for det in self.detections:
            if det.mask is not None:
                det.mask.release()
                det.mask = None
        self.detections = ()

    def image_rects(self) -> List[Rect]:
        model_w, model_h = self.input_size
        orig_w, orig_h = self.image_size
        return [unletterbox_rect(d.bbox, model_w, model_h, orig_w, orig_h) for d in self.detections]

    def to_dict(self, labels: Optional[Mapping[int, str]] = None) -> Dict[str, Any]:
        """JSON-ready export; boxes are given in original image pixels, masks are omitted."""
        rects = self.image_rects() if self.image_size[0] > 0 and self.image_size[1] > 0 else None
        dets = []
        for i, d in enumerate(self.detections):
            item: Dict[str, Any] = {
                "class_id": d.class_id,
                "confidence": d.confidence,
                "bbox": list(d.bbox),
                "has_mask": d.mask is not None,
            }
            if labels is not None:
                item["label"] = labels.get(d.class_id, str(d.class_id))
            if rects is not None:
                r = rects[i]
                item["image_bbox"] = [r.x, r.y, r.width, r.height]
            dets.append(item)
        return {
            "num_detections": self.num_detections,
            "detections": dets,
            "timings_ms": self.timings.as_dict(),
        }


class ResultBuilder:
    """Assembles a `ResultSet` from NMS survivors and (optionally) their masks."""

    def __init__(self, input_size: Tuple[int, int], image_size: Tuple[int, int], upsample_masks: bool = True):
        self.input_size = input_size
        self.image_size = image_size
        self.upsample_masks = upsample_masks

    def _copy_mask(self, mask: DecodedMask) -> MaskBuffer:
        if self.upsample_masks:
            # upsample always returns a new array
            return MaskBuffer(mask.upsample(*self.input_size), copy=False)
        return MaskBuffer(mask.data)

    def build(
        self,
        detections: Sequence[Detection],
        masks: Optional[Sequence[DecodedMask]] = None,
        timings: Optional[Timings] = None,
    ) -> ResultSet:
        if masks is not None and len(masks) != len(detections):
            raise InvalidArgumentError(f"Got {len(masks)} masks for {len(detections)} detections.")

        entries: List[ResultDetection] = []
        try:
            for i, det in enumerate(detections):
                buf = self._copy_mask(masks[i]) if masks is not None else None
                entries.append(
                    ResultDetection(
                        bbox=tuple(float(v) for v in det.bbox),
                        confidence=float(det.confidence),
                        class_id=int(det.class_id),
                        mask=buf,
                    )
                )
        except BaseException:
            for entry in entries:
                if entry.mask is not None:
                    entry.mask.release()
            raise

        return ResultSet(
            detections=tuple(entries),
            timings=timings if timings is not None else Timings(),
            input_size=self.input_size,
            image_size=self.image_size,
        )
