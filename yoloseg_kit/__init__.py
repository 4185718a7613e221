"""
Post-processing for YOLO instance-segmentation engines.

Turns the raw detection buffer and prototype-mask tensor of an inference
engine into image-space results: class-wise NMS, per-detection mask decoding,
letterbox inverse, result ownership and per-stage timings. Core helpers depend
on NumPy (and OpenCV for resizing); inference runtimes live in `backends`.
"""

from .config import SessionConfig, load_session_config
from .decode import anchors_to_detection_buffer
from .engine import EngineOutputs, InferenceEngine
from .errors import (
    InferenceError,
    InvalidArgumentError,
    ResourceError,
    SessionClosedError,
    YoloSegError,
)
from .letterbox import letterbox, unletterbox_mask, unletterbox_rect
from .masks import DecodedMask, decode_masks
from .metadata import load_label_map
from .nms import (
    batch_parse_and_suppress,
    box_iou,
    detections_to_buffer,
    nms,
    parse_and_suppress,
    parse_detections,
)
from .result import MaskBuffer, ResultBuilder, ResultDetection, ResultSet
from .runtime import SegmentationSession, create_session, find_project_root, load_session, resolve_path
from .timing import STAGES, StageTimer, Timings
from .types import DETECTION_STRIDE, NUM_MASK_COEFFS, Detection, Rect
from .visualize import draw_segmentation

__all__ = [
    "SessionConfig",
    "load_session_config",
    "anchors_to_detection_buffer",
    "EngineOutputs",
    "InferenceEngine",
    "InferenceError",
    "InvalidArgumentError",
    "ResourceError",
    "SessionClosedError",
    "YoloSegError",
    "letterbox",
    "unletterbox_mask",
    "unletterbox_rect",
    "DecodedMask",
    "decode_masks",
    "load_label_map",
    "batch_parse_and_suppress",
    "box_iou",
    "detections_to_buffer",
    "nms",
    "parse_and_suppress",
    "parse_detections",
    "MaskBuffer",
    "ResultBuilder",
    "ResultDetection",
    "ResultSet",
    "SegmentationSession",
    "create_session",
    "find_project_root",
    "load_session",
    "resolve_path",
    "STAGES",
    "StageTimer",
    "Timings",
    "DETECTION_STRIDE",
    "NUM_MASK_COEFFS",
    "Detection",
    "Rect",
    "draw_segmentation",
]
