#
# tensor_decoder.py: detection tensor decoding support
#
# Copyright DeGirum Corporation 2025
# All rights reserved
#
# Implements decoders for raw YOLO-family detection output tensors
#

"""
Tensor Decoder Module Overview
==============================

This module converts raw numeric output of object detection models into candidate boxes in
model-input pixel space. Three incompatible output layouts are supported, each represented by a
member of the closed `TensorLayout` enumeration and decoded by its own function.

Supported Layouts:
    - `TensorLayout.ANCHOR_MAJOR`: ``[4 + num_classes, num_anchors]`` (YOLOv8/11/12 style).
      Rows 0..3 hold box center x, center y, width and height; the remaining rows hold
      per-class scores.
    - `TensorLayout.DETECTION_STRIDE6`: ``[N, 6]`` rows of ``(x0, y0, x1, y1, score, class)``
      (YOLOv10 style, NMS-free).
    - `TensorLayout.DETECTION_STRIDE7`: ``[N, 7]`` rows of ``(batch, x0, y0, x1, y1, class, score)``
      (YOLOv7 end-to-end export).

Typical Usage:
    1. Pick a `ModelInfo` from `model_registry` (or construct one) for the running model
    2. Call `decode_tensor()` with the model output buffer and its shape
    3. Call `suppress_candidates()` to apply class-aware non-maximum suppression

Key Classes:
    - `TensorLayout`: Closed set of supported output layouts
    - `ModelInfo`: Model name, output layout and input resolution
    - `DecodeError`: Raised when buffer size and shape are inconsistent for the layout

Integration Notes:
    - Decoding either succeeds completely or raises `DecodeError`; partial results are never returned
    - Class IDs of detection-major layouts are rounded and clamped into ``[0, num_classes - 1]``
"""

import numpy as np
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Sequence, Tuple, Union
from .detections import CandidateBox, coco_classes
from .math_support import nms, xywh2xyxy


# default confidence threshold applied at decode time
default_confidence_threshold = 0.25

# default IoU threshold for non-maximum suppression
default_iou_threshold = 0.4


class DecodeError(ValueError):
    """Raised when a detection tensor cannot be decoded with the requested layout."""


class TensorLayout(Enum):
    """Detection tensor layout.

    Attributes:
        ANCHOR_MAJOR (int): ``[4 + num_classes, num_anchors]``, center-based boxes with per-class scores.
        DETECTION_STRIDE6 (int): ``[N, 6]``, corner boxes followed by score and class.
        DETECTION_STRIDE7 (int): ``[N, 7]``, batch index, corner boxes, class and score.
    """

    ANCHOR_MAJOR = 1
    DETECTION_STRIDE6 = 2
    DETECTION_STRIDE7 = 3

    @property
    def rounds_coordinates(self) -> bool:
        """True for layouts whose boxes are reported in whole display pixels."""
        return self != TensorLayout.ANCHOR_MAJOR


@dataclass(frozen=True)
class ModelInfo:
    """Detection model description.

    Attributes:
        name (str): Model file name.
        layout (TensorLayout): Output tensor layout.
        input_size (Tuple[int, int]): Model input size ``(width, height)``.
    """

    name: str
    layout: TensorLayout
    input_size: Tuple[int, int]


# known models, in order of preference for broad compatibility
model_registry: Dict[str, ModelInfo] = {
    m.name: m
    for m in (
        ModelInfo("yolov7-tiny_256x256.onnx", TensorLayout.DETECTION_STRIDE7, (256, 256)),
        ModelInfo("yolov7-tiny_320x320.onnx", TensorLayout.DETECTION_STRIDE7, (320, 320)),
        ModelInfo("yolov7-tiny_640x640.onnx", TensorLayout.DETECTION_STRIDE7, (640, 640)),
        ModelInfo("yolov10n.onnx", TensorLayout.DETECTION_STRIDE6, (256, 256)),
        ModelInfo("yolo11n.onnx", TensorLayout.ANCHOR_MAJOR, (256, 256)),
        ModelInfo("yolo12n.onnx", TensorLayout.ANCHOR_MAJOR, (256, 256)),
    )
}


def _as_array(buffer, shape: Sequence[int]) -> np.ndarray:
    """Validate buffer length against shape and return a flat float array."""
    data = np.asarray(buffer, dtype=np.float32).reshape(-1)
    if any(int(d) < 0 for d in shape):
        raise DecodeError(f"Negative dimension in tensor shape {list(shape)}")
    expected = int(np.prod([int(d) for d in shape])) if len(shape) else 0
    if len(shape) == 0 or data.size != expected:
        raise DecodeError(
            f"Tensor buffer of {data.size} values does not match shape {list(shape)}"
        )
    return data


def _detection_rows(
    buffer, shape: Sequence[int], stride: int, layout: TensorLayout
) -> np.ndarray:
    data = _as_array(buffer, shape)
    if shape[-1] != stride:
        raise DecodeError(
            f"{layout.name} expects last tensor dimension {stride}, got shape {list(shape)}"
        )
    return data.reshape(-1, stride)


def _rows_to_candidates(
    boxes: np.ndarray,
    scores: np.ndarray,
    raw_classes: np.ndarray,
    num_classes: int,
    threshold: float,
) -> List[CandidateBox]:
    mask = scores >= threshold
    # np.round rounds half to even; the model emits near-integral floats so this is immaterial
    class_ids = np.clip(np.round(raw_classes), 0, max(num_classes - 1, 0)).astype(int)
    return [
        CandidateBox(
            float(b[0]), float(b[1]), float(b[2]), float(b[3]), float(s), int(c)
        )
        for b, s, c in zip(boxes[mask], scores[mask], class_ids[mask])
    ]


def decode_anchor_major(
    buffer,
    shape: Sequence[int],
    num_classes: int = len(coco_classes),
    confidence_threshold: float = default_confidence_threshold,
) -> List[CandidateBox]:
    """Decode a ``[4 + num_classes, num_anchors]`` tensor.

    For each anchor only the best scoring class is kept; anchors whose best score does not exceed
    `confidence_threshold` are dropped.

    Args:
        buffer: Flat numeric buffer.
        shape (Sequence[int]): Tensor shape; leading dimensions of size 1 (batch) are allowed.
        num_classes (int, optional): Expected number of classes. Defaults to 80.
        confidence_threshold (float, optional): Minimum class score (exclusive).

    Returns:
        Candidate boxes in anchor order.

    Raises:
        DecodeError: If the buffer does not match the shape or the feature dimension is not
            ``4 + num_classes``.
    """
    data = _as_array(buffer, shape)
    if len(shape) < 2:
        raise DecodeError(f"ANCHOR_MAJOR expects at least 2 dimensions, got {list(shape)}")
    features, anchors = int(shape[-2]), int(shape[-1])
    if features != 4 + num_classes or data.size != features * anchors:
        raise DecodeError(
            f"ANCHOR_MAJOR expects [{4 + num_classes}, anchors] for {num_classes} classes, got shape {list(shape)}"
        )

    tensor = data.reshape(features, anchors)
    class_scores = tensor[4:, :]
    class_ids = np.argmax(class_scores, axis=0)  # first maximum wins on ties
    best = class_scores[class_ids, np.arange(anchors)]
    mask = best > confidence_threshold

    boxes = xywh2xyxy(tensor[:4, mask].T.astype(np.float64))
    return [
        CandidateBox(float(b[0]), float(b[1]), float(b[2]), float(b[3]), float(s), int(c))
        for b, s, c in zip(boxes, best[mask], class_ids[mask])
    ]


def decode_detection_stride6(
    buffer,
    shape: Sequence[int],
    num_classes: int = len(coco_classes),
    confidence_threshold: float = default_confidence_threshold,
) -> List[CandidateBox]:
    """Decode a ``[N, 6]`` tensor of ``(x0, y0, x1, y1, score, class)`` rows.

    Rows scoring below `confidence_threshold` are dropped.
    """
    rows = _detection_rows(buffer, shape, 6, TensorLayout.DETECTION_STRIDE6)
    return _rows_to_candidates(
        rows[:, 0:4], rows[:, 4], rows[:, 5], num_classes, confidence_threshold
    )


def decode_detection_stride7(
    buffer,
    shape: Sequence[int],
    num_classes: int = len(coco_classes),
    confidence_threshold: float = default_confidence_threshold,
) -> List[CandidateBox]:
    """Decode a ``[N, 7]`` tensor of ``(batch, x0, y0, x1, y1, class, score)`` rows.

    Rows scoring below `confidence_threshold` are dropped; the batch index is ignored.
    """
    rows = _detection_rows(buffer, shape, 7, TensorLayout.DETECTION_STRIDE7)
    return _rows_to_candidates(
        rows[:, 1:5], rows[:, 6], rows[:, 5], num_classes, confidence_threshold
    )


_decoders: Dict[TensorLayout, Callable[..., List[CandidateBox]]] = {
    TensorLayout.ANCHOR_MAJOR: decode_anchor_major,
    TensorLayout.DETECTION_STRIDE6: decode_detection_stride6,
    TensorLayout.DETECTION_STRIDE7: decode_detection_stride7,
}


def decode_tensor(
    buffer,
    shape: Sequence[int],
    layout: Union[TensorLayout, ModelInfo],
    num_classes: int = len(coco_classes),
    confidence_threshold: float = default_confidence_threshold,
) -> List[CandidateBox]:
    """Decode a detection tensor with the decoder of the given layout.

    Args:
        buffer: Flat numeric buffer (list, array, or anything `numpy.asarray` accepts).
        shape (Sequence[int]): Tensor dimensions.
        layout (Union[TensorLayout, ModelInfo]): Layout, or model description carrying it.
        num_classes (int, optional): Number of model classes. Defaults to 80.
        confidence_threshold (float, optional): Decode-time confidence threshold. Defaults to 0.25.

    Returns:
        Candidate boxes in model-input pixel space.

    Raises:
        DecodeError: If the buffer is inconsistent with the shape for the layout.
    """
    if isinstance(layout, ModelInfo):
        layout = layout.layout
    return _decoders[layout](
        buffer,
        shape,
        num_classes=num_classes,
        confidence_threshold=confidence_threshold,
    )


def suppress_candidates(
    candidates: Sequence[CandidateBox], iou_threshold: float = default_iou_threshold
) -> List[CandidateBox]:
    """Apply class-aware non-maximum suppression to candidate boxes.

    Args:
        candidates (Sequence[CandidateBox]): Candidate boxes.
        iou_threshold (float, optional): IoU above which the lower scoring box is dropped.

    Returns:
        Surviving candidates sorted by descending confidence; equal confidences keep input order.
    """
    if not candidates:
        return []
    bboxes = np.array([[c.x0, c.y0, c.x1, c.y1] for c in candidates], dtype=np.float64)
    scores = np.array([c.confidence for c in candidates], dtype=np.float64)
    classes = np.array([c.class_id for c in candidates], dtype=np.int64)
    return [candidates[i] for i in nms(bboxes, scores, classes, iou_threshold)]
