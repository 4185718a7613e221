import json
import tempfile
import unittest
from pathlib import Path

from yoloseg_kit.config import SessionConfig, load_session_config
from yoloseg_kit.errors import InvalidArgumentError


class TestSessionConfig(unittest.TestCase):
    def test_defaults(self) -> None:
        cfg = SessionConfig()
        self.assertEqual(cfg.input_size, (640, 640))
        self.assertEqual(cfg.proto_size, (160, 160))
        self.assertEqual(cfg.max_detections, 1000)
        self.assertTrue(cfg.upsample_masks)

    def test_validation(self) -> None:
        bad = [
            {"input_width": 0},
            {"input_width": 642},
            {"conf_threshold": 1.5},
            {"iou_threshold": -0.1},
            {"max_detections": 0},
            {"num_mask_coeffs": 16},
            {"letterbox_color": (0, 0, 300)},
        ]
        for kwargs in bad:
            with self.subTest(kwargs=kwargs):
                with self.assertRaises(InvalidArgumentError):
                    SessionConfig(**kwargs)


class TestLoadSessionConfig(unittest.TestCase):
    def _write(self, payload) -> Path:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        path = Path(tmpdir.name) / "session.json"
        path.write_text(payload if isinstance(payload, str) else json.dumps(payload), encoding="utf-8")
        return path

    def test_load_overrides(self) -> None:
        path = self._write({"conf_threshold": 0.25, "iou_threshold": 1, "upsample_masks": False, "letterbox_color": [0, 0, 0]})
        cfg = load_session_config(path)
        self.assertEqual(cfg.conf_threshold, 0.25)
        self.assertIsInstance(cfg.iou_threshold, float)
        self.assertFalse(cfg.upsample_masks)
        self.assertEqual(cfg.letterbox_color, (0, 0, 0))
        self.assertEqual(cfg.input_width, 640)

    def test_missing_file(self) -> None:
        with self.assertRaises(FileNotFoundError):
            load_session_config("/nonexistent/session.json")

    def test_rejects_bad_payloads(self) -> None:
        for payload in ("{not json", "[1, 2]", {"conf": 0.3}, {"max_detections": "100"}, {"upsample_masks": 1}):
            with self.subTest(payload=payload):
                with self.assertRaises(InvalidArgumentError):
                    load_session_config(self._write(payload))


if __name__ == "__main__":
    unittest.main()
