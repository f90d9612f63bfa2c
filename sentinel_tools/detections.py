#
# detections.py: canonical detection records
#
# Copyright DeGirum Corporation 2025
# All rights reserved
#
# Implements detection data classes and the normalizer which converts
# model-space candidate boxes into display-space detections
#

"""
Detections Module Overview
==========================

This module defines the records passed between the stages of the detection pipeline and the
normalizer that produces canonical detections from decoded model output.

Key Classes:
    - `Point`: 2D point in display pixels
    - `BoundingBox`: Axis-aligned box ``(x0, y0, x1, y1)``
    - `CandidateBox`: Pre-NMS detection proposal in model-input pixel space
    - `Detection`: Immutable canonical detection in display pixel space

Key Functions:
    - `normalize_detections()`: Scale candidate boxes to display space and resolve class labels
    - `class_label()`: Resolve a class label from a label table with a synthesized fallback
"""

import math
from dataclasses import dataclass
from typing import List, NamedTuple, Optional, Sequence, Tuple


class Point(NamedTuple):
    """2D point. Indexable as ``(x, y)`` so it can be passed to `math_support` functions."""

    x: float
    y: float

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y}

    @classmethod
    def from_any(cls, p) -> "Point":
        """Build a point from a ``{"x": .., "y": ..}`` dictionary or an ``(x, y)`` pair."""
        if isinstance(p, Point):
            return p
        if isinstance(p, dict):
            return cls(float(p["x"]), float(p["y"]))
        return cls(float(p[0]), float(p[1]))


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned bounding box with ``x0 <= x1`` and ``y0 <= y1``."""

    x0: float
    y0: float
    x1: float
    y1: float

    @property
    def center(self) -> Point:
        """Midpoint of the box."""
        return Point(self.x0 + (self.x1 - self.x0) / 2, self.y0 + (self.y1 - self.y0) / 2)

    def contains(self, p) -> bool:
        return self.x0 <= p[0] <= self.x1 and self.y0 <= p[1] <= self.y1

    def to_list(self) -> List[float]:
        return [self.x0, self.y0, self.x1, self.y1]

    def to_dict(self) -> dict:
        return {"x0": self.x0, "y0": self.y0, "x1": self.x1, "y1": self.y1}


@dataclass(frozen=True)
class CandidateBox:
    """Detection proposal produced by the tensor decoder, in model-input pixel space."""

    x0: float
    y0: float
    x1: float
    y1: float
    confidence: float
    class_id: int


@dataclass(frozen=True)
class Detection:
    """Canonical detection in display pixel space.

    Attributes:
        bbox (BoundingBox): Object bounding box.
        class_id (int): Class index into the model's label table.
        score (float): Confidence score in the range 0..1.
        label (str): Class label text.
    """

    bbox: BoundingBox
    class_id: int
    score: float
    label: str

    @property
    def center(self) -> Point:
        """Center of the bounding box; always lies within the box."""
        return self.bbox.center

    def summary(self) -> dict:
        """Detection summary as used in webhook payloads."""
        return {
            "classId": self.class_id,
            "label": self.label,
            "score": round(self.score, 4),
            "center": self.center.to_dict(),
            "bbox": self.bbox.to_dict(),
        }


# COCO class labels used by the bundled YOLO model family
coco_classes: Tuple[str, ...] = (
    "person", "bicycle", "car", "motorcycle", "airplane", "bus", "train", "truck",
    "boat", "traffic light", "fire hydrant", "stop sign", "parking meter", "bench",
    "bird", "cat", "dog", "horse", "sheep", "cow", "elephant", "bear", "zebra",
    "giraffe", "backpack", "umbrella", "handbag", "tie", "suitcase", "frisbee",
    "skis", "snowboard", "sports ball", "kite", "baseball bat", "baseball glove",
    "skateboard", "surfboard", "tennis racket", "bottle", "wine glass", "cup",
    "fork", "knife", "spoon", "bowl", "banana", "apple", "sandwich", "orange",
    "broccoli", "carrot", "hot dog", "pizza", "donut", "cake", "chair", "couch",
    "potted plant", "bed", "dining table", "toilet", "tv", "laptop", "mouse",
    "remote", "keyboard", "cell phone", "microwave", "oven", "toaster", "sink",
    "refrigerator", "book", "clock", "vase", "scissors", "teddy bear",
    "hair drier", "toothbrush",
)  # fmt: skip


def class_label(class_id: int, class_labels: Sequence[str]) -> str:
    """Return the label for `class_id`, or ``class_<id>`` if it is out of table range."""
    if 0 <= class_id < len(class_labels):
        return str(class_labels[class_id])
    return f"class_{class_id}"


def normalize_detections(
    candidates: Sequence[CandidateBox],
    model_size: Tuple[int, int],
    display_size: Tuple[int, int],
    class_labels: Optional[Sequence[str]] = None,
    *,
    round_coordinates: bool = False,
) -> List[Detection]:
    """Convert model-space candidate boxes into display-space detections.

    Args:
        candidates (Sequence[CandidateBox]): Boxes surviving non-maximum suppression.
        model_size (Tuple[int, int]): Model input size ``(width, height)``.
        display_size (Tuple[int, int]): Display size ``(width, height)``.
        class_labels (Sequence[str], optional): Class label table. Defaults to `coco_classes`.
        round_coordinates (bool, optional): Round scaled coordinates to whole pixels.

    Returns:
        List of detections in the same order as `candidates`.
    """
    if class_labels is None:
        class_labels = coco_classes

    sx = display_size[0] / model_size[0]
    sy = display_size[1] / model_size[1]

    ret: List[Detection] = []
    for c in candidates:
        coords = [c.x0 * sx, c.y0 * sy, c.x1 * sx, c.y1 * sy]
        if round_coordinates:
            coords = [float(math.floor(v + 0.5)) for v in coords]
        x0, y0, x1, y1 = coords
        # keep the box well-formed even if the model emitted swapped corners
        bbox = BoundingBox(min(x0, x1), min(y0, y1), max(x0, x1), max(y0, y1))
        ret.append(
            Detection(
                bbox=bbox,
                class_id=int(c.class_id),
                score=float(c.confidence),
                label=class_label(int(c.class_id), class_labels),
            )
        )
    return ret
