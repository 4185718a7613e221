from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Tuple, Union

import numpy as np

from ..decode import anchors_to_detection_buffer
from ..engine import EngineOutputs
from ..errors import InvalidArgumentError, ResourceError
from ..nms import DEFAULT_MAX_DETECTIONS, detection_buffer_size
from ..types import NUM_MASK_COEFFS

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass(frozen=True)
class OnnxRuntimeBackendConfig:
    """
    Configuration for ONNX Runtime inference.

    - providers: ORT execution providers (e.g., ["CUDAExecutionProvider", "CPUExecutionProvider"])
    - detection_output/proto_output: override auto-selected output names if needed
    - input_size: (width, height) used when the model input has symbolic dims
    """

    providers: Optional[Sequence[str]] = None
    input_name: Optional[str] = None
    detection_output: Optional[str] = None
    proto_output: Optional[str] = None
    input_size: Tuple[int, int] = (640, 640)
    max_detections: int = DEFAULT_MAX_DETECTIONS
    mask_downsample: int = 4


def _static_dim(value, fallback: int) -> int:
    return int(value) if isinstance(value, int) and value > 0 else fallback


class OnnxRuntimeBackend:
    """
    ONNX Runtime engine for YOLO segmentation exports.

    Expects an NCHW float32 blob shaped (1, 3, H, W). The detection head is
    converted to the fixed-stride detection buffer; the prototype output is
    returned as is.
    """

    def __init__(self, model_path: PathLike, cfg: OnnxRuntimeBackendConfig = OnnxRuntimeBackendConfig()):
        try:
            import onnxruntime as ort  # type: ignore
        except Exception as e:  # pragma: no cover
            raise ResourceError(
                "onnxruntime is required for the ONNX backend. Install it with `pip install onnxruntime` "
                "(or `onnxruntime-gpu`)."
            ) from e

        self._ort = ort
        self.cfg = cfg
        self.model_path = Path(model_path)
        if not self.model_path.exists():
            raise ResourceError(f"Model file not found: {self.model_path}")

        sess_opts = ort.SessionOptions()
        providers = list(cfg.providers) if cfg.providers is not None else None
        try:
            self.session = ort.InferenceSession(str(self.model_path), sess_options=sess_opts, providers=providers)
        except Exception as e:
            raise ResourceError(f"Failed to load ONNX model {self.model_path}: {e}") from e

        model_input = self.session.get_inputs()[0]
        self.input_name = cfg.input_name or model_input.name
        shape = list(model_input.shape) + [None] * (4 - len(model_input.shape))
        self._input_shape = (
            1,
            _static_dim(shape[1], 3),
            _static_dim(shape[2], cfg.input_size[1]),
            _static_dim(shape[3], cfg.input_size[0]),
        )

        self.detection_output, self.proto_output = self._pick_outputs()
        logger.info(
            "Loaded %s (input %s, outputs %s/%s, providers %s)",
            self.model_path.name,
            self._input_shape,
            self.detection_output,
            self.proto_output,
            ", ".join(self.providers_in_use),
        )

    def _pick_outputs(self) -> Tuple[str, str]:
        outputs = self.session.get_outputs()
        if len(outputs) < 2:
            raise ResourceError(
                f"Segmentation model needs detection and prototype outputs, {self.model_path} has {len(outputs)}."
            )
        names = [o.name for o in outputs]
        proto = self.cfg.proto_output
        if proto is None:
            # Prototype tensor is the only rank-4 output: (1, 32, H/4, W/4).
            ranked = [o.name for o in outputs if len(o.shape) == 4]
            proto = ranked[0] if ranked else names[1]
        det = self.cfg.detection_output or next(n for n in names if n != proto)
        for n in (det, proto):
            if n not in names:
                raise ResourceError(f"Output {n!r} not found. Available: {names}")
        return det, proto

    @property
    def providers_in_use(self) -> Sequence[str]:
        return tuple(self.session.get_providers())

    @property
    def input_shape(self) -> Tuple[int, int, int, int]:
        return self._input_shape

    @property
    def output_shape(self) -> Tuple[int, int]:
        _, _, h, w = self._input_shape
        ds = self.cfg.mask_downsample
        return detection_buffer_size(self.cfg.max_detections), NUM_MASK_COEFFS * (h // ds) * (w // ds)

    def run(self, blob: np.ndarray) -> EngineOutputs:
        if blob is None:
            raise InvalidArgumentError("blob must be a NumPy array.")
        det, proto = self.session.run([self.detection_output, self.proto_output], {self.input_name: blob})
        det_buf = anchors_to_detection_buffer(det, max_detections=self.cfg.max_detections)
        return EngineOutputs(detections=det_buf, prototypes=proto)
