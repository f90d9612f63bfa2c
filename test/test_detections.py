#
# test_detections.py: unit tests for detection normalization
#
# Copyright DeGirum Corporation 2025
# All rights reserved
#
# Implements unit tests for detection records and the detection normalizer
#

import pytest
from sentinel_tools import (
    BoundingBox,
    CandidateBox,
    Point,
    class_label,
    coco_classes,
    normalize_detections,
)


def test_class_label():
    assert len(coco_classes) == 80
    assert class_label(0, coco_classes) == "person"
    assert class_label(79, coco_classes) == "toothbrush"
    assert class_label(80, coco_classes) == "class_80"
    assert class_label(-1, coco_classes) == "class_-1"


def test_normalize_scaling():
    candidates = [CandidateBox(10, 20, 30, 40, 0.5, 2)]
    res = normalize_detections(candidates, (256, 256), (512, 128))

    assert len(res) == 1
    det = res[0]
    assert det.bbox.to_list() == pytest.approx([20, 10, 60, 20])
    assert det.center == pytest.approx((40, 15))
    assert det.label == "car"
    assert det.class_id == 2
    assert det.score == 0.5


def test_normalize_rounding():
    candidates = [CandidateBox(10.3, 20.5, 30.49, 40.7, 0.5, 0)]
    res = normalize_detections(
        candidates, (100, 100), (100, 100), round_coordinates=True
    )
    assert res[0].bbox.to_list() == [10, 21, 30, 41]


def test_normalize_swapped_corners():
    candidates = [CandidateBox(30, 40, 10, 20, 0.5, 0)]
    det = normalize_detections(candidates, (100, 100), (100, 100))[0]
    assert det.bbox.to_list() == [10, 20, 30, 40]
    assert det.bbox.contains(det.center)


def test_normalize_labels():
    candidates = [CandidateBox(0, 0, 1, 1, 0.5, 0), CandidateBox(0, 0, 1, 1, 0.5, 3)]
    res = normalize_detections(candidates, (1, 1), (1, 1), ["cat", "dog"])
    assert [d.label for d in res] == ["cat", "class_3"]


def test_detection_summary():
    det = normalize_detections(
        [CandidateBox(0, 0, 10, 20, 0.123456, 0)], (10, 20), (10, 20)
    )[0]
    assert det.summary() == {
        "classId": 0,
        "label": "person",
        "score": 0.1235,
        "center": {"x": 5, "y": 10},
        "bbox": {"x0": 0, "y0": 0, "x1": 10, "y1": 20},
    }


def test_point():
    assert Point.from_any({"x": 1, "y": 2}) == Point(1, 2)
    assert Point.from_any([3, 4]) == Point(3, 4)
    assert Point(1, 2).to_dict() == {"x": 1, "y": 2}
    assert BoundingBox(0, 0, 4, 2).center == Point(2, 1)
