"""Inference engine contract used by the session."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, Tuple, runtime_checkable

import numpy as np


@dataclass(frozen=True)
class EngineOutputs:
    """
    Raw outputs of one engine run.

    Arrays may live on the device (e.g. torch CUDA tensors); `to_host` copies
    them into contiguous float32 NumPy buffers.
    """

    detections: Any
    prototypes: Any


@runtime_checkable
class InferenceEngine(Protocol):
    """
    Anything that turns a preprocessed NCHW float32 blob into raw outputs.

    `run` must only return once its outputs are fully written (any async queue
    synchronised), so post-processing never sees partial buffers.
    """

    @property
    def input_shape(self) -> Tuple[int, int, int, int]:
        """(batch, channels, height, width)"""
        ...

    @property
    def output_shape(self) -> Tuple[int, int]:
        """(detection buffer floats, prototype buffer floats) per image"""
        ...

    def run(self, blob: np.ndarray) -> EngineOutputs:
        ...


def to_host(x: Any) -> np.ndarray:
    """Copy an engine output (NumPy array or torch tensor) into a flat float32 host buffer."""
    if hasattr(x, "detach"):
        x = x.detach().to("cpu").numpy()
    return np.array(x, dtype=np.float32, copy=True).ravel()


def close_engine(engine: Any) -> None:
    close = getattr(engine, "close", None)
    if callable(close):
        close()
