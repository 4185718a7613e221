import unittest

import numpy as np

from yoloseg_kit.errors import InvalidArgumentError
from yoloseg_kit.masks import DecodedMask, decode_masks, downscale_rect
from yoloseg_kit.types import NUM_MASK_COEFFS, Detection

MODEL = 64
GRID = MODEL // 4


def _det(bbox, coeffs=None):
    if coeffs is None:
        coeffs = np.zeros(NUM_MASK_COEFFS)
    return Detection(bbox=tuple(float(v) for v in bbox), confidence=0.9, class_id=0, mask_coeffs=tuple(float(c) for c in coeffs))


class TestDecodeMasks(unittest.TestCase):
    def test_probabilities_stay_in_unit_range(self) -> None:
        rng = np.random.default_rng(0)
        proto = rng.normal(scale=20.0, size=(NUM_MASK_COEFFS, GRID, GRID)).astype(np.float32)
        dets = [_det([0, 0, MODEL, MODEL], rng.normal(scale=20.0, size=NUM_MASK_COEFFS)) for _ in range(5)]
        for m in decode_masks(proto.ravel(), dets, model_w=MODEL, model_h=MODEL):
            self.assertGreaterEqual(float(m.data.min()), 0.0)
            self.assertLessEqual(float(m.data.max()), 1.0)

    def test_only_box_region_is_filled(self) -> None:
        proto = np.ones((NUM_MASK_COEFFS, GRID, GRID), dtype=np.float32)
        (mask,) = decode_masks(proto, [_det([16, 16, 16, 16], np.full(NUM_MASK_COEFFS, 0.1))], model_w=MODEL, model_h=MODEL)

        self.assertEqual(mask.data.shape, (GRID, GRID))
        inside = mask.data[4:8, 4:8]
        expected = 1.0 / (1.0 + np.exp(-3.2))
        self.assertTrue(np.allclose(inside, expected, atol=1e-5))

        outside = mask.data.copy()
        outside[4:8, 4:8] = 0.0
        self.assertEqual(float(np.abs(outside).sum()), 0.0)

    def test_linear_combination_per_channel(self) -> None:
        proto = np.zeros((NUM_MASK_COEFFS, GRID, GRID), dtype=np.float32)
        proto[3] = 2.0
        proto[7] = -1.0
        coeffs = np.zeros(NUM_MASK_COEFFS)
        coeffs[3] = 0.5
        coeffs[7] = 1.5
        (mask,) = decode_masks(proto, [_det([0, 0, MODEL, MODEL], coeffs)], model_w=MODEL, model_h=MODEL)
        # logit = 0.5 * 2 + 1.5 * -1 = -0.5
        self.assertAlmostEqual(float(mask.data[0, 0]), 1.0 / (1.0 + np.exp(0.5)), places=5)

    def test_zero_logit_is_one_half(self) -> None:
        proto = np.zeros((1, NUM_MASK_COEFFS, GRID, GRID), dtype=np.float32)
        (mask,) = decode_masks(proto, [_det([0, 0, 8, 8])], model_w=MODEL, model_h=MODEL)
        self.assertTrue(np.allclose(mask.data[0:2, 0:2], 0.5))

    def test_negative_box_clamped(self) -> None:
        proto = np.zeros((NUM_MASK_COEFFS, GRID, GRID), dtype=np.float32)
        (mask,) = decode_masks(proto, [_det([-20, -20, 40, 40])], model_w=MODEL, model_h=MODEL)
        self.assertEqual(int((mask.data > 0).sum()), 5 * 5)

    def test_box_outside_grid_gives_empty_mask(self) -> None:
        proto = np.ones((NUM_MASK_COEFFS, GRID, GRID), dtype=np.float32)
        masks = decode_masks(proto, [_det([100, 100, 10, 10]), _det([10, 10, -5, -5])], model_w=MODEL, model_h=MODEL)
        for m in masks:
            self.assertEqual(float(m.data.sum()), 0.0)

    def test_order_and_length_preserved(self) -> None:
        proto = np.zeros((NUM_MASK_COEFFS, GRID, GRID), dtype=np.float32)
        dets = [_det([0, 0, 8, 8]), _det([32, 32, 8, 8]), _det([0, 0, 0, 0])]
        masks = decode_masks(proto, dets, model_w=MODEL, model_h=MODEL)
        self.assertEqual(len(masks), 3)
        self.assertGreater(float(masks[0].data[0, 0]), 0.0)
        self.assertEqual(float(masks[0].data[8, 8]), 0.0)
        self.assertGreater(float(masks[1].data[8, 8]), 0.0)
        self.assertEqual(float(masks[2].data.sum()), 0.0)
        self.assertEqual(decode_masks(proto, [], model_w=MODEL, model_h=MODEL), [])

    def test_prototype_size_mismatch_rejected(self) -> None:
        with self.assertRaises(InvalidArgumentError):
            decode_masks(np.zeros((16, GRID, GRID)), [_det([0, 0, 8, 8])], model_w=MODEL, model_h=MODEL)
        with self.assertRaises(InvalidArgumentError):
            decode_masks(None, [], model_w=MODEL, model_h=MODEL)

    def test_coefficient_count_mismatch_rejected(self) -> None:
        proto = np.zeros((NUM_MASK_COEFFS, GRID, GRID), dtype=np.float32)
        det = Detection(bbox=(0.0, 0.0, 8.0, 8.0), confidence=0.9, class_id=0, mask_coeffs=(1.0, 2.0))
        with self.assertRaises(InvalidArgumentError):
            decode_masks(proto, [det], model_w=MODEL, model_h=MODEL)


class TestDownscaleRect(unittest.TestCase):
    def test_scales_and_truncates(self) -> None:
        self.assertEqual(downscale_rect((10, 10, 21, 21), 640, 640, 4, 160, 160), (2, 2, 5, 5))

    def test_clamps_to_model_input(self) -> None:
        self.assertEqual(downscale_rect((600, 620, 100, 100), 640, 640, 4, 160, 160), (150, 155, 10, 5))

    def test_non_finite_is_empty(self) -> None:
        self.assertEqual(downscale_rect((float("nan"), 0, 10, 10), 640, 640, 4, 160, 160), (0, 0, 0, 0))


class TestDecodedMask(unittest.TestCase):
    def test_upsample_to_model_size(self) -> None:
        mask = DecodedMask(data=np.full((GRID, GRID), 0.25, dtype=np.float32))
        up = mask.upsample(MODEL, MODEL)
        self.assertEqual(up.shape, (MODEL, MODEL))
        self.assertTrue(np.allclose(up, 0.25))
        self.assertEqual((mask.width, mask.height), (GRID, GRID))


if __name__ == "__main__":
    unittest.main()
