#
# math_support.py: mathematical utilities for array operations
#
# Copyright DeGirum Corporation 2025
# All rights reserved
#
# Implements geometric functions for boxes, polygons and line segments
#

# The notice below applies to `area()`, `intersection()` and `xywh2xyxy()`:
#
# MIT License
#
# Copyright (c) 2022 Roboflow
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

"""
Math Support Module Overview
===========================

This module provides the geometric primitives used by the detection and rule evaluation stages.
It includes functions for bounding box manipulation, class-aware non-maximum suppression,
point-in-polygon containment, and line segment intersection.

Key Features:
    - **Bounding Box Operations**: Area calculation, intersection, IoU, coordinate conversions
    - **Non-maximum Suppression**: Deterministic class-aware suppression with stable tie order
    - **Polygon Containment**: Even-odd ray casting test for arbitrary (non-convex) polygons
    - **Segment Geometry**: Orientation, signed side, and intersection tests for line segments

Integration Notes:
    - Built on NumPy for efficient array operations
    - Boxes are in ``(x1, y1, x2, y2)`` format unless noted otherwise
    - Points are any indexable ``(x, y)`` pair: tuples, lists, arrays or `Point` objects

Key Functions:
    - `area()`: Calculate bounding box areas
    - `intersection()`: Compute intersection area of bounding boxes
    - `iou()`: Compute intersection-over-union of two boxes
    - `nms()`: Apply class-aware non-maximum suppression
    - `point_in_polygon()`: Even-odd containment test
    - `segments_intersect()`: Segment intersection test including colinear overlap
    - `signed_side()`: Side of a point relative to a directed line
"""

import math
import numpy as np
from typing import Sequence, Union


def area(box: np.ndarray) -> np.ndarray:
    """Compute bounding box areas.

    Args:
        box (np.ndarray): Single box ``(x1, y1, x2, y2)`` or an array of such
            boxes with shape ``(N, 4)``.

    Returns:
        Area of each input box.
    """
    return (box[..., 2] - box[..., 0]) * (box[..., 3] - box[..., 1])


def intersection(boxA: np.ndarray, boxB: np.ndarray) -> Union[float, np.ndarray]:
    """Compute intersection area of bounding boxes.

    Args:
        boxA (np.ndarray): First set of boxes ``(x1, y1, x2, y2)``.
        boxB (np.ndarray): Second set of boxes ``(x1, y1, x2, y2)``.

    Returns:
        Intersection area for each pair of boxes.
    """
    xA = np.fmax(boxA[..., 0], boxB[..., 0])
    xB = np.fmin(boxA[..., 2], boxB[..., 2])
    dx = np.fmax(xB - xA, 0)

    yA = np.fmax(boxA[..., 1], boxB[..., 1])
    yB = np.fmin(boxA[..., 3], boxB[..., 3])
    dy = np.fmax(yB - yA, 0)

    return dx * dy


def iou(boxA: np.ndarray, boxB: np.ndarray) -> Union[float, np.ndarray]:
    """Compute intersection-over-union of bounding boxes.

    A zero-area union yields IoU of 0, so degenerate boxes never suppress each other.

    Args:
        boxA (np.ndarray): First box or set of boxes ``(x1, y1, x2, y2)``.
        boxB (np.ndarray): Second box or set of boxes ``(x1, y1, x2, y2)``.

    Returns:
        IoU for each pair of boxes.
    """
    boxA = np.asarray(boxA, dtype=np.float64)
    boxB = np.asarray(boxB, dtype=np.float64)
    inter = intersection(boxA, boxB)
    union = area(boxA) + area(boxB) - inter
    with np.errstate(divide="ignore", invalid="ignore"):
        ret = np.where(union > 0, inter / np.where(union > 0, union, 1), 0.0)
    return ret if ret.ndim else float(ret)


def xywh2xyxy(x: np.ndarray) -> np.ndarray:
    """Convert ``(x, y, w, h)`` boxes (center-based) to ``(x1, y1, x2, y2)`` format."""
    y = np.copy(x)
    y[..., 0:2] = x[..., 0:2] - x[..., 2:4] / 2  # top left (x, y)
    y[..., 2:4] = x[..., 0:2] + x[..., 2:4] / 2  # bottom right (x, y)
    return y


def nms(
    bboxes: np.ndarray,
    scores: np.ndarray,
    classes: np.ndarray,
    iou_threshold: float = 0.4,
) -> np.ndarray:
    """Apply class-aware non-maximum suppression.

    Boxes are sorted by descending score with a stable sort, so boxes of equal score keep their
    original relative order. Each surviving box suppresses every later box of the same class whose
    IoU with it exceeds `iou_threshold`. Boxes of different classes never suppress each other.

    Args:
        bboxes (np.ndarray): Boxes ``(N, 4)`` in ``(x1, y1, x2, y2)`` format.
        scores (np.ndarray): Confidence scores ``(N,)``.
        classes (np.ndarray): Class IDs ``(N,)``.
        iou_threshold (float, optional): IoU above which a box is suppressed. Defaults to ``0.4``.

    Returns:
        Indices of the surviving boxes, in descending score order.
    """
    bboxes = np.asarray(bboxes, dtype=np.float64).reshape(-1, 4)
    scores = np.asarray(scores, dtype=np.float64).reshape(-1)
    classes = np.asarray(classes).reshape(-1)

    order = np.argsort(-scores, kind="stable")
    sorted_boxes = bboxes[order]
    sorted_classes = classes[order]
    keep = np.ones(len(order), dtype=bool)

    for i in range(len(order)):
        if not keep[i]:
            continue
        rest = np.arange(i + 1, len(order))
        rest = rest[keep[rest] & (sorted_classes[rest] == sorted_classes[i])]
        if rest.size == 0:
            continue
        overlap = iou(sorted_boxes[i][None, :], sorted_boxes[rest])
        keep[rest[overlap > iou_threshold]] = False

    return order[keep]


def distance(p1, p2) -> float:
    """Euclidean distance between two points."""
    return math.hypot(p2[0] - p1[0], p2[1] - p1[1])


def point_in_polygon(point, polygon: Sequence) -> bool:
    """Check if a point lies inside a polygon using even-odd ray casting.

    A horizontal ray is cast from the point towards +x; each polygon edge straddling the ray's
    y coordinate (one endpoint strictly above, the other at or below) with an x-intersection to
    the right of the point flips the result. Points lying exactly on an edge may be classified
    either way.

    Args:
        point: ``(x, y)`` point to test.
        polygon (Sequence): Polygon vertices ``[(x, y), ...]``; at least three are required.

    Returns:
        True if the point is inside the polygon; False otherwise, including for polygons
        with fewer than three vertices.
    """
    n = len(polygon)
    if n < 3:
        return False

    px, py = point[0], point[1]
    inside = False
    j = n - 1
    for i in range(n):
        xi, yi = polygon[i][0], polygon[i][1]
        xj, yj = polygon[j][0], polygon[j][1]
        if (yi > py) != (yj > py) and px < (xj - xi) * (py - yi) / (yj - yi) + xi:
            inside = not inside
        j = i
    return inside


def orient(a, b, c) -> float:
    """Orientation of the triangle ``(a, b, c)``: twice its signed area.

    Positive for a counter-clockwise turn in a y-up frame, negative for clockwise, zero if colinear.
    """
    return (b[0] - a[0]) * (c[1] - a[1]) - (b[1] - a[1]) * (c[0] - a[0])


def signed_side(a, b, p) -> float:
    """Signed side of point `p` relative to the directed line ``a -> b``."""
    return orient(a, b, p)


def _on_segment(a, b, p) -> bool:
    return min(a[0], b[0]) <= p[0] <= max(a[0], b[0]) and min(a[1], b[1]) <= p[
        1
    ] <= max(a[1], b[1])


def segments_intersect(a, b, c, d) -> bool:
    """Return ``True`` if segment ``a-b`` intersects segment ``c-d``.

    Covers proper crossings, touching endpoints and colinear overlap.
    The result is symmetric: ``segments_intersect(a, b, c, d) == segments_intersect(c, d, a, b)``.
    """
    o1 = orient(a, b, c)
    o2 = orient(a, b, d)
    o3 = orient(c, d, a)
    o4 = orient(c, d, b)

    if (
        (o1 == 0 and _on_segment(a, b, c))
        or (o2 == 0 and _on_segment(a, b, d))
        or (o3 == 0 and _on_segment(c, d, a))
        or (o4 == 0 and _on_segment(c, d, b))
    ):
        return True
    return (o1 > 0) != (o2 > 0) and (o3 > 0) != (o4 > 0)
