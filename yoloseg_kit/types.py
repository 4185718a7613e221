from dataclasses import dataclass
from typing import Tuple

NUM_MASK_COEFFS = 32
# x, y, w, h, confidence, class_id, 32 mask coefficients
DETECTION_STRIDE = 4 + 1 + 1 + NUM_MASK_COEFFS


@dataclass(frozen=True)
class Detection:
    """
    One detection in model-input pixel space.

    `bbox` is (x, y, w, h) with (x, y) the top-left corner. Instances are
    immutable; the parser creates them and the decoder / remapper only read them.
    """

    bbox: Tuple[float, float, float, float]
    confidence: float
    class_id: int
    mask_coeffs: Tuple[float, ...] = ()

    def as_xyxy(self) -> Tuple[float, float, float, float]:
        x, y, w, h = self.bbox
        return x, y, x + w, y + h


@dataclass(frozen=True)
class Rect:
    """Integer pixel rectangle in original-image space."""

    x: int
    y: int
    width: int
    height: int

    def as_xyxy(self) -> Tuple[int, int, int, int]:
        return self.x, self.y, self.x + self.width, self.y + self.height

    @property
    def area(self) -> int:
        return self.width * self.height
