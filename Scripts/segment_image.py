from __future__ import annotations

import argparse
import dataclasses
import json
import statistics
from dataclasses import dataclass
from typing import Dict, List

import numpy as np

from yoloseg_kit import STAGES, SessionConfig, load_session, load_session_config
from yoloseg_kit.letterbox import require_cv2


@dataclass(frozen=True)
class TimingSummary:
    n: int
    mean_ms: float
    p50_ms: float
    p90_ms: float


def _percentile(sorted_values: List[float], q: float) -> float:
    if not sorted_values:
        raise ValueError("No values provided.")
    if q < 0.0 or q > 100.0:
        raise ValueError("q must be in [0, 100].")
    if len(sorted_values) == 1:
        return float(sorted_values[0])
    # Linear interpolation between closest ranks.
    pos = (q / 100.0) * (len(sorted_values) - 1)
    lo = int(np.floor(pos))
    hi = int(np.ceil(pos))
    if lo == hi:
        return float(sorted_values[lo])
    t = pos - lo
    return float(sorted_values[lo] * (1.0 - t) + sorted_values[hi] * t)


def _summarize_ms(values_ms: List[float]) -> TimingSummary:
    ms_sorted = sorted(values_ms)
    return TimingSummary(
        n=len(ms_sorted),
        mean_ms=float(statistics.fmean(ms_sorted)) if ms_sorted else 0.0,
        p50_ms=_percentile(ms_sorted, 50.0) if ms_sorted else 0.0,
        p90_ms=_percentile(ms_sorted, 90.0) if ms_sorted else 0.0,
    )


def _format_summary(label: str, s: TimingSummary) -> str:
    return f"{label:>12}: n={s.n} mean={s.mean_ms:.3f}ms p50={s.p50_ms:.3f}ms p90={s.p90_ms:.3f}ms"


def main() -> int:
    parser = argparse.ArgumentParser(description="Run YOLO instance segmentation on an image and report stage timings.")
    parser.add_argument("--model", required=True, help="Path to a segmentation model (.engine/.plan/.onnx).")
    parser.add_argument("--labels", required=True, help="Class names file (one per line, or a names: yaml).")
    parser.add_argument("--image", required=True, help="Path to an input image.")
    parser.add_argument("--config", default=None, help="Optional session config JSON.")
    parser.add_argument("--backend", default=None, help="Force backend: onnxruntime / tensorrt.")
    parser.add_argument("--conf", type=float, default=None, help="Confidence threshold (overrides --config).")
    parser.add_argument("--iou", type=float, default=None, help="IoU threshold for NMS (overrides --config).")
    parser.add_argument("--skip-masks", action="store_true", help="Skip mask decoding (boxes only).")
    parser.add_argument("--out", default=None, help="Optional output path for the rendered image.")
    parser.add_argument("--repeats", type=int, default=1, help="Run inference N times and summarize timings.")
    parser.add_argument("--json", action="store_true", help="Print the last result as JSON.")
    parser.add_argument(
        "--engine-only",
        action="store_true",
        help="Time engine runs only (one preprocess, untimed warmup, no NMS / masks).",
    )
    parser.add_argument("--warmup", type=int, default=10, help="For --engine-only: warmup runs not recorded.")
    args = parser.parse_args()

    if args.repeats < 1:
        raise ValueError("--repeats must be >= 1")
    if args.warmup < 0:
        raise ValueError("--warmup must be >= 0")

    cfg = load_session_config(args.config) if args.config else SessionConfig()
    overrides = {}
    if args.conf is not None:
        overrides["conf_threshold"] = float(args.conf)
    if args.iou is not None:
        overrides["iou_threshold"] = float(args.iou)
    if overrides:
        cfg = dataclasses.replace(cfg, **overrides)

    per_stage: Dict[str, List[float]] = {name: [] for name in ("total", *STAGES)}

    with load_session(args.model, args.labels, backend=args.backend, config=cfg) as session:
        if args.engine_only:
            cv2 = require_cv2("--engine-only")
            img = cv2.imread(args.image)
            if img is None:
                raise FileNotFoundError(f"Could not read image at path: {args.image}")
            t = session.benchmark_engine(int(args.repeats), warmup=int(args.warmup), image_bgr=img)
            print(f"Engine only: {args.repeats} runs after {args.warmup} warmup")
            print(f"{'engine':>12}: mean={t.engine:.3f}ms")
            print(f"{'fps':>12}: {t.fps:.1f}")
            return 0

        result = None
        for _ in range(int(args.repeats)):
            if result is not None:
                result.release()
            result = session.infer(args.image, skip_masks=bool(args.skip_masks))
            for name, value in result.timings.as_dict().items():
                per_stage[name].append(value)

        with result:
            if args.json:
                print(json.dumps(result.to_dict(session.labels), indent=2))
            else:
                print(f"Detections: {result.num_detections}")
                for det, rect in zip(result.detections, result.image_rects()):
                    name = session.labels.get(det.class_id, str(det.class_id))
                    print(f"  {name:<16} conf={det.confidence:.3f} box=({rect.x}, {rect.y}, {rect.width}, {rect.height})")

            if args.out:
                session.save_result_image(args.image, result, args.out)
                print(f"Saved visualization to: {args.out}")

    print("\nTiming summary")
    for name, values in per_stage.items():
        print(_format_summary(name, _summarize_ms(values)))
    total = _summarize_ms(per_stage["total"])
    if total.mean_ms > 0:
        print(f"{'fps':>12}: {1000.0 / total.mean_ms:.1f}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
