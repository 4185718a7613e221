import math
import unittest

import numpy as np

from yoloseg_kit.errors import InvalidArgumentError
from yoloseg_kit.nms import (
    batch_parse_and_suppress,
    box_iou,
    detection_buffer_size,
    detections_to_buffer,
    nms,
    parse_and_suppress,
    parse_detections,
)
from yoloseg_kit.types import DETECTION_STRIDE, NUM_MASK_COEFFS, Detection


def _det(bbox, conf, cls=0):
    return Detection(bbox=tuple(float(v) for v in bbox), confidence=conf, class_id=cls, mask_coeffs=(0.0,) * NUM_MASK_COEFFS)


def _buffer(*dets, capacity=None):
    return detections_to_buffer(list(dets), capacity=capacity)


class TestParseAndSuppress(unittest.TestCase):
    def test_overlapping_same_class_keeps_highest(self) -> None:
        raw = _buffer(_det([10, 10, 50, 50], 0.9), _det([12, 12, 50, 50], 0.85))
        out = parse_and_suppress(raw, confidence_threshold=0.25, iou_threshold=0.5)
        self.assertEqual(len(out), 1)
        self.assertAlmostEqual(out[0].confidence, 0.9, places=6)
        self.assertEqual(out[0].bbox, (10.0, 10.0, 50.0, 50.0))

    def test_confidence_equal_to_threshold_is_dropped(self) -> None:
        raw = _buffer(_det([0, 0, 10, 10], 0.25), _det([100, 100, 10, 10], 0.26))
        out = parse_and_suppress(raw, confidence_threshold=0.25)
        self.assertEqual(len(out), 1)
        self.assertAlmostEqual(out[0].confidence, 0.26, places=6)

    def test_nan_confidence_dropped_without_affecting_siblings(self) -> None:
        raw = _buffer(_det([0, 0, 10, 10], 0.5), _det([100, 100, 10, 10], 0.8), _det([200, 200, 10, 10], 0.7))
        raw[1 + 4] = np.nan
        out = parse_and_suppress(raw, confidence_threshold=0.25)
        self.assertEqual(len(out), 2)
        self.assertTrue(all(not math.isnan(d.confidence) for d in out))
        self.assertAlmostEqual(out[0].confidence, 0.8, places=6)
        self.assertAlmostEqual(out[1].confidence, 0.7, places=6)

    def test_high_iou_suppressed(self) -> None:
        # IoU = 9000 / 10000 = 0.9
        raw = _buffer(_det([0, 0, 100, 100], 0.9), _det([0, 0, 100, 90], 0.8))
        out = parse_and_suppress(raw, confidence_threshold=0.25, iou_threshold=0.5)
        self.assertEqual(len(out), 1)
        self.assertAlmostEqual(out[0].confidence, 0.9, places=6)

    def test_low_iou_both_survive(self) -> None:
        # IoU = 3000 / 10000 = 0.3
        raw = _buffer(_det([0, 0, 100, 100], 0.9), _det([0, 0, 30, 100], 0.8))
        out = parse_and_suppress(raw, confidence_threshold=0.25, iou_threshold=0.5)
        self.assertEqual(len(out), 2)

    def test_equal_confidence_ordered_by_x(self) -> None:
        raw = _buffer(_det([20, 0, 10, 10], 0.8), _det([10, 100, 10, 10], 0.8))
        out = parse_and_suppress(raw, confidence_threshold=0.25)
        self.assertEqual([d.bbox[0] for d in out], [10.0, 20.0])

    def test_suppression_does_not_cross_classes(self) -> None:
        raw = _buffer(_det([0, 0, 50, 50], 0.6, cls=1), _det([0, 0, 50, 50], 0.9, cls=0))
        out = parse_and_suppress(raw, confidence_threshold=0.25)
        self.assertEqual(len(out), 2)
        # grouped by class id, no global re-sort
        self.assertEqual([d.class_id for d in out], [0, 1])

    def test_grouped_order_is_kept(self) -> None:
        raw = _buffer(
            _det([0, 0, 10, 10], 0.95, cls=2),
            _det([50, 50, 10, 10], 0.4, cls=0),
            _det([100, 100, 10, 10], 0.6, cls=0),
        )
        out = parse_and_suppress(raw, confidence_threshold=0.25)
        self.assertEqual([d.class_id for d in out], [0, 0, 2])
        self.assertAlmostEqual(out[0].confidence, 0.6, places=6)

    def test_duplicates_keep_only_best(self) -> None:
        raw = _buffer(_det([5, 5, 20, 20], 0.7), _det([5, 5, 20, 20], 0.9), _det([5, 5, 20, 20], 0.8))
        out = parse_and_suppress(raw, confidence_threshold=0.25)
        self.assertEqual(len(out), 1)
        self.assertAlmostEqual(out[0].confidence, 0.9, places=6)

    def test_idempotent(self) -> None:
        rng = np.random.default_rng(7)
        dets = []
        for _ in range(40):
            x, y = rng.uniform(0, 200, size=2)
            w, h = rng.uniform(10, 80, size=2)
            dets.append(_det([x, y, w, h], float(rng.uniform(0.3, 1.0)), cls=int(rng.integers(0, 3))))
        first = parse_and_suppress(_buffer(*dets), confidence_threshold=0.25, iou_threshold=0.5)
        second = parse_and_suppress(detections_to_buffer(first), confidence_threshold=0.25, iou_threshold=0.5)
        self.assertEqual(first, second)

    def test_empty_buffer(self) -> None:
        raw = np.zeros(detection_buffer_size(3), dtype=np.float32)
        self.assertEqual(parse_and_suppress(raw, confidence_threshold=0.25), [])

    def test_entries_past_count_ignored(self) -> None:
        raw = _buffer(_det([0, 0, 10, 10], 0.9), _det([100, 100, 10, 10], 0.9), capacity=4)
        raw[0] = 1
        out = parse_and_suppress(raw, confidence_threshold=0.25)
        self.assertEqual(len(out), 1)
        self.assertEqual(out[0].bbox[0], 0.0)

    def test_mask_coefficients_preserved(self) -> None:
        det = Detection(bbox=(0.0, 0.0, 10.0, 10.0), confidence=0.9, class_id=3, mask_coeffs=tuple(float(i) for i in range(32)))
        out = parse_and_suppress(_buffer(det), confidence_threshold=0.25)
        self.assertEqual(out[0].mask_coeffs, det.mask_coeffs)
        self.assertEqual(out[0].class_id, 3)

    def test_missing_buffer_rejected(self) -> None:
        with self.assertRaises(InvalidArgumentError):
            parse_and_suppress(None, confidence_threshold=0.25)


class TestParseDetections(unittest.TestCase):
    def test_count_clamped_to_max_detections(self) -> None:
        raw = _buffer(*[_det([i * 20, 0, 10, 10], 0.9) for i in range(3)])
        self.assertEqual(len(parse_detections(raw, max_detections=2)), 2)

    def test_count_clamped_to_records_present(self) -> None:
        raw = _buffer(_det([0, 0, 10, 10], 0.9), _det([20, 0, 10, 10], 0.9))
        raw[0] = 5
        self.assertEqual(len(parse_detections(raw)), 2)

    def test_non_finite_count_reads_as_zero(self) -> None:
        raw = _buffer(_det([0, 0, 10, 10], 0.9))
        raw[0] = np.nan
        self.assertEqual(parse_detections(raw), [])


class TestBatch(unittest.TestCase):
    def test_each_image_is_independent(self) -> None:
        stride = detection_buffer_size(2)
        img0 = _buffer(_det([0, 0, 50, 50], 0.9), _det([2, 2, 50, 50], 0.8), capacity=2)
        img1 = _buffer(_det([0, 0, 50, 50], 0.1), capacity=2)
        raw = np.concatenate([img0, img1])
        self.assertEqual(raw.size, 2 * stride)

        out = batch_parse_and_suppress(raw, batch_size=2, buffer_stride=stride, confidence_threshold=0.25)
        self.assertEqual(len(out), 2)
        self.assertEqual(len(out[0]), 1)
        self.assertEqual(out[1], [])

    def test_short_buffer_rejected(self) -> None:
        with self.assertRaises(InvalidArgumentError):
            batch_parse_and_suppress(np.zeros(10), batch_size=2, buffer_stride=DETECTION_STRIDE + 1, confidence_threshold=0.5)


class TestIoU(unittest.TestCase):
    def test_disjoint_and_degenerate(self) -> None:
        self.assertEqual(box_iou((0, 0, 10, 10), (20, 20, 10, 10)), 0.0)
        self.assertEqual(box_iou((10, 10, -5, -5), (0, 0, 20, 20)), 0.0)
        self.assertEqual(box_iou((0, 0, 0, 0), (0, 0, 0, 0)), 0.0)

    def test_identical(self) -> None:
        self.assertAlmostEqual(box_iou((3, 4, 10, 20), (3, 4, 10, 20)), 1.0)

    def test_nms_tie_break(self) -> None:
        boxes = np.array([[20, 0, 30, 10], [10, 0, 20, 10]], dtype=np.float32)
        scores = np.array([0.5, 0.5], dtype=np.float32)
        self.assertEqual(nms(boxes, scores, 0.5).tolist(), [1, 0])


if __name__ == "__main__":
    unittest.main()
