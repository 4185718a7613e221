from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Sequence, Tuple, Union

import numpy as np

from ..engine import EngineOutputs
from ..errors import InvalidArgumentError, ResourceError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass(frozen=True)
class TensorRTBackendConfig:
    """
    Configuration for TensorRT engine inference.

    Notes:
    - TensorRT engines require a CUDA-capable environment.
    - Device buffers and the CUDA stream come from torch (no PyCUDA).
    - Default tensor names follow the decode-plugin seg engines: input "images",
      outputs "output" (detection buffer) and "proto" (prototype masks).
    - input_size: (width, height) used when the engine input has dynamic dims
    """

    device: str = "cuda"
    input_name: str = "images"
    detection_output: str = "output"
    proto_output: str = "proto"
    input_size: Tuple[int, int] = (640, 640)


def resolve_io_shapes(
    context,
    input_name: str,
    output_names: Sequence[str],
    engine_input_shape: Sequence[int],
    input_size: Tuple[int, int] = (640, 640),
) -> Dict[str, Tuple[int, ...]]:
    """
    Fix the input shape of a dynamic engine and read back every I/O shape from the context.

    Dynamic dims (< 0) become batch 1, 3 channels and `input_size` (width, height).
    Static engines pass through unchanged.
    """

    shape = tuple(int(d) for d in engine_input_shape)
    if any(d < 0 for d in shape):
        if len(shape) != 4:
            raise ResourceError(f"Dynamic input {input_name!r} has rank {len(shape)}, expected NCHW.")
        _, c, h, w = shape
        fixed = (1, c if c > 0 else 3, h if h > 0 else int(input_size[1]), w if w > 0 else int(input_size[0]))
        try:
            ok = context.set_input_shape(input_name, fixed)
        except Exception as e:
            raise ResourceError(f"Failed to set shape {fixed} on dynamic input {input_name!r}: {e}") from e
        if ok is False:
            raise ResourceError(f"Shape {fixed} is outside the optimisation profile of dynamic input {input_name!r}.")
        logger.info("Dynamic input %r resolved to %s", input_name, fixed)

    shapes: Dict[str, Tuple[int, ...]] = {}
    for name in (input_name, *output_names):
        resolved = tuple(int(d) for d in context.get_tensor_shape(name))
        if any(d < 0 for d in resolved):
            raise ResourceError(f"Tensor {name!r} still has a dynamic shape {resolved} after setting the input shape.")
        shapes[name] = resolved
    return shapes


def _torch_dtype_from_trt(trt_dtype) -> "object":
    import torch  # type: ignore

    # Compare by name to avoid depending on tensorrt enum identity.
    name = getattr(trt_dtype, "name", str(trt_dtype)).lower()
    if "float16" in name or "half" in name:
        return torch.float16
    if "int32" in name:
        return torch.int32
    if "int8" in name:
        return torch.int8
    return torch.float32


class TensorRTBackend:
    """
    TensorRT engine runner using the tensor-name API (set_tensor_address + execute_async_v3).

    Input and output device buffers are allocated once, when the engine is
    loaded, and reused by every `run`. Not safe for concurrent calls: create
    one backend per thread.
    """

    def __init__(self, engine_path: PathLike, cfg: TensorRTBackendConfig = TensorRTBackendConfig()):
        try:
            import tensorrt as trt  # type: ignore
            import torch  # type: ignore
        except Exception as e:  # pragma: no cover
            raise ResourceError(
                "tensorrt and torch are required for the TensorRT backend. "
                "Install NVIDIA TensorRT Python bindings and `pip install torch`."
            ) from e

        self._trt = trt
        self._torch = torch

        self.engine_path = Path(engine_path)
        if not self.engine_path.exists():
            raise ResourceError(f"Engine file not found: {self.engine_path}")

        self.device = torch.device(cfg.device)
        if self.device.type != "cuda":
            raise InvalidArgumentError("TensorRTBackend requires a CUDA device (device='cuda').")
        if not torch.cuda.is_available():  # pragma: no cover
            raise ResourceError("CUDA is not available in this torch install, but TensorRT requires CUDA.")

        trt_logger = trt.Logger(trt.Logger.WARNING)
        self.runtime = trt.Runtime(trt_logger)
        engine = self.runtime.deserialize_cuda_engine(self.engine_path.read_bytes())
        if engine is None:
            raise ResourceError(f"Failed to deserialize TensorRT engine: {self.engine_path}")
        self.engine = engine
        self.context = engine.create_execution_context()
        if self.context is None:
            raise ResourceError("Failed to create TensorRT execution context.")

        self.input_name = cfg.input_name
        self.detection_output = cfg.detection_output
        self.proto_output = cfg.proto_output
        self._check_io()
        self._shapes = resolve_io_shapes(
            self.context,
            self.input_name,
            (self.detection_output, self.proto_output),
            self.engine.get_tensor_shape(self.input_name),
            cfg.input_size,
        )

        self.stream = torch.cuda.Stream(device=self.device)
        self._buffers = self._allocate()
        for name, t in self._buffers.items():
            self.context.set_tensor_address(name, int(t.data_ptr()))
        logger.info("Loaded TensorRT engine %s (input %s)", self.engine_path.name, self.input_shape)

    def _check_io(self) -> None:
        trt = self._trt
        engine = self.engine
        names = [engine.get_tensor_name(i) for i in range(engine.num_io_tensors)]
        inputs: List[str] = [n for n in names if engine.get_tensor_mode(n) == trt.TensorIOMode.INPUT]
        outputs: List[str] = [n for n in names if engine.get_tensor_mode(n) == trt.TensorIOMode.OUTPUT]
        if self.input_name not in inputs:
            raise ResourceError(f"Input name {self.input_name!r} not found. Available: {inputs}")
        for name in (self.detection_output, self.proto_output):
            if name not in outputs:
                raise ResourceError(f"Output name {name!r} not found. Available: {outputs}")

    def _shape(self, name: str) -> Tuple[int, ...]:
        return self._shapes[name]

    def _allocate(self) -> Dict[str, "object"]:
        torch = self._torch
        buffers: Dict[str, "object"] = {}
        for name in (self.input_name, self.detection_output, self.proto_output):
            dtype = _torch_dtype_from_trt(self.engine.get_tensor_dtype(name))
            buffers[name] = torch.empty(size=self._shape(name), dtype=dtype, device=self.device)
        return buffers

    @property
    def input_shape(self) -> Tuple[int, int, int, int]:
        n, c, h, w = self._shape(self.input_name)
        return n, c, h, w

    @property
    def output_shape(self) -> Tuple[int, int]:
        batch = max(1, self.input_shape[0])
        det = int(np.prod(self._shape(self.detection_output))) // batch
        proto = int(np.prod(self._shape(self.proto_output))) // batch
        return det, proto

    def run(self, blob: np.ndarray) -> EngineOutputs:
        torch = self._torch
        if blob is None:
            raise InvalidArgumentError("blob must be a NumPy array.")

        x = self._buffers[self.input_name]
        if tuple(np.asarray(blob).shape) != tuple(x.shape):
            raise InvalidArgumentError(f"Expected input shape {tuple(x.shape)}, got {np.asarray(blob).shape}")

        with torch.cuda.stream(self.stream):
            x.copy_(torch.as_tensor(blob).to(device=self.device, dtype=x.dtype), non_blocking=True)
            ok = self.context.execute_async_v3(self.stream.cuda_stream)
        if not ok:  # pragma: no cover
            raise RuntimeError("TensorRT execute_async_v3 failed.")
        # Outputs are read only after the queue has drained.
        self.stream.synchronize()

        return EngineOutputs(
            detections=self._buffers[self.detection_output],
            prototypes=self._buffers[self.proto_output],
        )

    def close(self) -> None:
        self._buffers = {}
        self.context = None
        self.engine = None
