from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional, Sequence, Union

import numpy as np

from .config import SessionConfig
from .engine import InferenceEngine, close_engine, to_host
from .errors import InferenceError, InvalidArgumentError, ResourceError, SessionClosedError, YoloSegError
from .letterbox import letterbox, require_cv2
from .masks import decode_masks
from .metadata import load_label_map
from .nms import parse_and_suppress
from .result import ResultBuilder, ResultSet
from .timing import StageTimer, Timings
from .types import NUM_MASK_COEFFS
from .visualize import draw_segmentation

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def find_project_root(
    start: Optional[PathLike] = None,
    markers: Sequence[str] = ("pyproject.toml", "setup.py", ".git", "requirements.txt"),
) -> Path:
    """
    Best-effort project root discovery.

    Useful when `yoloseg_kit` is vendored as `A/yoloseg_kit` and models live in `A/models`.
    """

    p = Path(start) if start is not None else Path.cwd()
    p = p.resolve()

    if p.is_file():
        p = p.parent

    for parent in (p, *p.parents):
        for m in markers:
            if (parent / m).exists():
                return parent
    return p


def resolve_path(path: PathLike, root: Optional[PathLike] = "auto") -> Path:
    """
    Resolve `path` to an absolute Path.

    - Absolute paths are returned as-is.
    - Relative paths are resolved against `root` if provided, the project root otherwise.
    """

    p = Path(path)
    if p.is_absolute():
        return p

    if root == "auto" or root is None:
        base = find_project_root()
    else:
        base = Path(root).resolve()

    return (base / p).resolve()


@dataclass(frozen=True)
class EngineInfo:
    """Per-call buffer sizes, in elements."""

    input_size: int
    output_size: int
    output_seg_size: int


class SegmentationSession:
    """
    Handle over one inference engine, its label map and configuration.

    One call at a time: every call reuses the engine's scratch buffers, so use
    a separate session per thread. Host-side results are never kept between calls.
    """

    def __init__(self, engine: InferenceEngine, labels: Mapping[int, str], cfg: SessionConfig):
        n, c, h, w = engine.input_shape
        if (w, h) != cfg.input_size:
            raise InvalidArgumentError(f"Engine input is {w}x{h} but the config expects {cfg.input_width}x{cfg.input_height}.")
        grid_w, grid_h = cfg.proto_size
        det_size, proto_size = engine.output_shape
        if proto_size != NUM_MASK_COEFFS * grid_w * grid_h:
            raise InvalidArgumentError(
                f"Engine prototype output has {proto_size} floats, expected {NUM_MASK_COEFFS} x {grid_h} x {grid_w}."
            )

        self._engine: Optional[InferenceEngine] = engine
        self._labels = labels
        self._cfg = cfg
        self._info = EngineInfo(input_size=n * c * h * w, output_size=det_size, output_seg_size=proto_size)

    @property
    def labels(self) -> Mapping[int, str]:
        return self._labels

    @property
    def config(self) -> SessionConfig:
        return self._cfg

    @property
    def closed(self) -> bool:
        return self._engine is None

    def engine_info(self) -> EngineInfo:
        self._check_open()
        return self._info

    def __enter__(self) -> "SegmentationSession":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._engine is not None:
            engine, self._engine = self._engine, None
            close_engine(engine)

    def _check_open(self) -> InferenceEngine:
        if self._engine is None:
            raise SessionClosedError("Session is closed.")
        return self._engine

    @staticmethod
    def _check_image(image_bgr: np.ndarray) -> None:
        if image_bgr is None or not hasattr(image_bgr, "shape"):
            raise InvalidArgumentError("image_bgr must be a NumPy array (BGR).")
        if image_bgr.ndim != 3 or image_bgr.shape[2] != 3:
            raise InvalidArgumentError(f"Expected image shape (H, W, 3), got {getattr(image_bgr, 'shape', None)}")
        if image_bgr.shape[0] == 0 or image_bgr.shape[1] == 0:
            raise InvalidArgumentError("Image has zero width or height.")

    @contextmanager
    def _call_boundary(self, what: str) -> Iterator[None]:
        try:
            yield
        except YoloSegError:
            raise
        except Exception as exc:
            logger.error("%s failed: %s", what, exc)
            raise InferenceError(f"{what} failed: {exc}") from exc

    def preprocess(self, image_bgr: np.ndarray) -> np.ndarray:
        img, _, _ = letterbox(image_bgr, new_shape=self._cfg.input_size, color=self._cfg.letterbox_color)

        # BGR -> RGB, normalize, HWC -> CHW, add batch
        blob = img[:, :, ::-1].astype(np.float32) / 255.0
        return np.ascontiguousarray(np.transpose(blob, (2, 0, 1))[None, ...])

    def _infer(self, engine: InferenceEngine, image_bgr: np.ndarray, timer: StageTimer, skip_masks: bool) -> ResultSet:
        cfg = self._cfg
        orig_h, orig_w = image_bgr.shape[:2]

        with timer.stage("preprocess"):
            blob = self.preprocess(image_bgr)

        with timer.stage("engine"):
            outputs = engine.run(blob)

        with timer.stage("result_copy"):
            det_buf = to_host(outputs.detections)[: self._info.output_size]
            proto_buf = to_host(outputs.prototypes)[: self._info.output_seg_size]

        with timer.stage("postprocess"):
            dets = parse_and_suppress(det_buf, cfg.conf_threshold, cfg.iou_threshold, cfg.max_detections)
            masks = None
            if not skip_masks:
                masks = decode_masks(
                    proto_buf,
                    dets,
                    model_w=cfg.input_width,
                    model_h=cfg.input_height,
                    downsample=cfg.mask_downsample,
                )
            builder = ResultBuilder(cfg.input_size, (orig_w, orig_h), upsample_masks=cfg.upsample_masks)
            return builder.build(dets, masks)

    def infer_image(self, image_bgr: np.ndarray, skip_masks: bool = False) -> ResultSet:
        """
        Run detection + segmentation on an in-memory BGR image.

        The image-read timing is reported as 0.0. Pass `skip_masks=True` to
        skip mask decoding; detections then carry no mask.
        """

        engine = self._check_open()
        self._check_image(image_bgr)

        timer = StageTimer()
        with self._call_boundary("infer_image"):
            with timer.total():
                result = self._infer(engine, image_bgr, timer, skip_masks)
            result.timings = timer.timings()

        logger.debug("infer_image: %d detections, timings %s", result.num_detections, result.timings.as_dict())
        return result

    def infer(self, image_path: PathLike, skip_masks: bool = False) -> ResultSet:
        """Read an image file and run `infer_image` on it, timing the read as well."""

        engine = self._check_open()
        if not image_path:
            raise InvalidArgumentError("image_path is required.")

        timer = StageTimer()
        with self._call_boundary("infer"):
            cv2 = require_cv2("infer()")
            with timer.total():
                with timer.stage("image_read"):
                    img = cv2.imread(str(image_path))
                if img is None:
                    raise ResourceError(f"Failed to read image: {image_path}")
                self._check_image(img)
                result = self._infer(engine, img, timer, skip_masks)
            result.timings = timer.timings()

        logger.debug("infer(%s): %d detections, timings %s", image_path, result.num_detections, result.timings.as_dict())
        return result

    def benchmark_engine(self, iterations: int, warmup: int = 10, image_bgr: Optional[np.ndarray] = None) -> Timings:
        """
        Engine-only throughput: preprocess once, then run the engine on the same blob.

        `warmup` runs are not timed. The returned `Timings` hold the average per
        run in `engine` and `total`; every other stage is 0.0. Without an image
        a blank frame of the model input size is used.
        """

        engine = self._check_open()
        if iterations <= 0:
            raise InvalidArgumentError(f"iterations must be > 0 (got {iterations}).")
        if warmup < 0:
            raise InvalidArgumentError(f"warmup must be >= 0 (got {warmup}).")
        if image_bgr is None:
            image_bgr = np.zeros((self._cfg.input_height, self._cfg.input_width, 3), dtype=np.uint8)
        self._check_image(image_bgr)

        with self._call_boundary("benchmark_engine"):
            blob = self.preprocess(image_bgr)
            for _ in range(warmup):
                engine.run(blob)

            start = time.perf_counter()
            for _ in range(iterations):
                engine.run(blob)
            per_run_ms = (time.perf_counter() - start) * 1000.0 / iterations

        logger.info("benchmark_engine: %d runs, %.3f ms per run", iterations, per_run_ms)
        return Timings(total=per_run_ms, engine=per_run_ms)

    def render(self, image_bgr: np.ndarray, result: ResultSet) -> np.ndarray:
        self._check_open()
        return draw_segmentation(
            image_bgr,
            result,
            class_names=self._labels,
            mask_threshold=self._cfg.mask_threshold,
        )

    def save_result_image(self, image_path: PathLike, result: ResultSet, output_path: PathLike) -> None:
        """Draw `result` over the original image file and write it to `output_path`."""

        self._check_open()
        with self._call_boundary("save_result_image"):
            cv2 = require_cv2("save_result_image()")
            img = cv2.imread(str(image_path))
            if img is None:
                raise ResourceError(f"Failed to read image: {image_path}")
            vis = self.render(img, result)
            if not cv2.imwrite(str(output_path), vis):
                raise ResourceError(f"Failed to write output image: {output_path}")


def create_session(
    engine: InferenceEngine,
    labels_path: PathLike,
    config: Optional[SessionConfig] = None,
) -> SegmentationSession:
    """
    Wrap an engine into a session. The session takes ownership of the engine.

    If anything fails (bad labels file, engine / config mismatch) the engine is
    closed and no session is returned.
    """

    try:
        if engine is None or not isinstance(engine, InferenceEngine):
            raise InvalidArgumentError("engine must provide input_shape, output_shape and run().")
        labels = load_label_map(labels_path)
        return SegmentationSession(engine, labels, config or SessionConfig())
    except BaseException:
        if engine is not None:
            close_engine(engine)
        raise


def load_session(
    model_path: PathLike,
    labels_path: PathLike,
    *,
    backend: Optional[str] = None,
    root: Optional[PathLike] = "auto",
    config: Optional[SessionConfig] = None,
    onnx_providers: Optional[Sequence[str]] = None,
    trt_device: str = "cuda",
) -> SegmentationSession:
    """
    Create a session for a model on disk.

    Typical usage:
        with load_session("models/yolo11s-seg.engine", "models/labels.txt") as session:
            with session.infer("images/bus.jpg") as result:
                print(result.num_detections, result.timings.total)

    Args:
        model_path: engine / model file; relative paths resolve against the project root by default
        labels_path: class names file, resolved the same way
        backend: "onnxruntime" or "tensorrt"; None infers it from the extension
    """

    cfg = config or SessionConfig()
    resolved = resolve_path(model_path, root=root)
    labels = resolve_path(labels_path, root=root)

    chosen = backend
    if chosen is None:
        suffix = resolved.suffix.lower()
        if suffix == ".onnx":
            chosen = "onnxruntime"
        elif suffix in {".engine", ".plan"}:
            chosen = "tensorrt"
        else:
            raise InvalidArgumentError(
                f"Could not infer backend from extension '{suffix}'. Pass backend=... explicitly."
            )

    chosen = chosen.lower()
    if chosen == "onnxruntime":
        from .backends.onnxruntime_backend import OnnxRuntimeBackend, OnnxRuntimeBackendConfig

        engine = OnnxRuntimeBackend(
            resolved,
            OnnxRuntimeBackendConfig(
                providers=onnx_providers,
                input_size=cfg.input_size,
                max_detections=cfg.max_detections,
                mask_downsample=cfg.mask_downsample,
            ),
        )
    elif chosen == "tensorrt":
        from .backends.tensorrt_backend import TensorRTBackend, TensorRTBackendConfig

        engine = TensorRTBackend(resolved, TensorRTBackendConfig(device=trt_device, input_size=cfg.input_size))
    else:
        raise InvalidArgumentError(f"Unsupported backend: {backend!r}")

    return create_session(engine, labels, cfg)
