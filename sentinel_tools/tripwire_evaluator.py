#
# tripwire_evaluator.py: tripwire crossing evaluation
#
# Copyright DeGirum Corporation 2025
# All rights reserved
#
# Implements classes to detect objects crossing user-defined tripwires and classify crossing direction
#

"""
Tripwire Evaluator Module Overview
==================================

This module detects objects crossing tripwires: directed line segments ``a -> b`` drawn by the user.
It consumes ``(previous, current)`` detection pairs produced by `object_associator.associate()`;
a crossing is reported when the path of the detection center between the two frames intersects the
tripwire segment.

Direction Convention:
    The signed side of a point relative to the tripwire is the cross product of ``b - a`` and
    ``p - a``. A move from the negative side to the positive side is ``a->b``, a move from the
    positive side to the negative side is ``b->a``. An intersection without a sign flip (only
    possible in colinear or touching cases) is classified as ``any``.

    Example: for ``a=(0,0)``, ``b=(10,0)`` a center moving ``(5,-1) -> (5,1)`` crosses ``a->b``.

Key Classes:
    - `TripwireDirection`: Direction filter and classified crossing direction
    - `Tripwire`: Tripwire definition
    - `TripwireCrossing`: Result record of a detection crossing a tripwire
    - `TripwireEvaluator`: Per-frame crossing evaluation

Integration Notes:
    - Only detections matched to the previous frame can cross, so an object must be visible in at
      least two consecutive frames to trigger a tripwire
    - Disabled and degenerate (``a == b``) tripwires are skipped silently
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple
from .detections import Detection, Point
from .math_support import segments_intersect, signed_side
from .zone_evaluator import DetectionFilter


# default tripwire color
default_tripwire_color = "#f59e0b"


class TripwireDirection(str, Enum):
    """Tripwire direction filter and classified crossing direction."""

    ANY = "any"
    A_TO_B = "a->b"
    B_TO_A = "b->a"


@dataclass(frozen=True)
class Tripwire:
    """Tripwire definition.

    Attributes:
        id (str): Unique tripwire identifier.
        label (str): Tripwire label.
        a (Point): Start point of the directed reference segment.
        b (Point): End point of the directed reference segment.
        color (str): Display color.
        enabled (bool): Whether the tripwire takes part in evaluation.
        direction (TripwireDirection): Direction filter; crossings in the other direction are ignored.
    """

    id: str
    label: str
    a: Point
    b: Point
    color: str = default_tripwire_color
    enabled: bool = True
    direction: TripwireDirection = TripwireDirection.ANY

    @property
    def is_valid(self) -> bool:
        """True if tripwire endpoints are distinct."""
        return self.a != self.b

    @classmethod
    def from_dict(cls, d: dict, index: int = 0) -> "Tripwire":
        """Build a tripwire from a stored tripwire record.

        Args:
            d (dict): Tripwire record with ``a`` and ``b`` points and optional ``id``, ``label``,
                ``color``, ``enabled`` and ``direction`` keys.
            index (int, optional): Zero-based tripwire index used to synthesize a default label.

        Returns:
            Tripwire object.

        Raises:
            ValueError: If ``direction`` is not one of ``any``, ``a->b`` or ``b->a``.
        """
        return cls(
            id=str(d.get("id") or uuid.uuid4()),
            label=str(d.get("label") or f"Tripwire {index + 1}"),
            a=Point.from_any(d["a"]),
            b=Point.from_any(d["b"]),
            color=str(d.get("color", default_tripwire_color)),
            enabled=bool(d.get("enabled", True)),
            direction=TripwireDirection(d.get("direction") or TripwireDirection.ANY.value),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "a": self.a.to_dict(),
            "b": self.b.to_dict(),
            "color": self.color,
            "enabled": self.enabled,
            "direction": self.direction.value,
        }


@dataclass(frozen=True)
class TripwireCrossing:
    """Detection crossing a tripwire.

    Attributes:
        tripwire (Tripwire): Crossed tripwire.
        detection (Detection): Current-frame detection.
        direction (TripwireDirection): Classified crossing direction.
    """

    tripwire: Tripwire
    detection: Detection
    direction: TripwireDirection


def classify_crossing(
    tripwire: Tripwire, prev_point, curr_point
) -> Optional[TripwireDirection]:
    """Classify movement of a point against a tripwire.

    Args:
        tripwire (Tripwire): Tripwire to test.
        prev_point: Point position in the previous frame.
        curr_point: Point position in the current frame.

    Returns:
        Crossing direction, or None if the path does not intersect the tripwire.
    """
    if not segments_intersect(prev_point, curr_point, tripwire.a, tripwire.b):
        return None

    s0 = signed_side(tripwire.a, tripwire.b, prev_point)
    s1 = signed_side(tripwire.a, tripwire.b, curr_point)
    if s0 < 0 < s1:
        return TripwireDirection.A_TO_B
    if s0 > 0 > s1:
        return TripwireDirection.B_TO_A
    return TripwireDirection.ANY


class TripwireEvaluator:
    """Evaluates matched detection pairs against tripwires.

    For every crossing passing the tripwire's direction filter a `TripwireCrossing` is produced and,
    when `on_crossing` is given, ``(tripwire, detection, direction)`` is forwarded to it
    (typically `AlertDispatcher.notify_tripwire`).
    """

    def __init__(
        self,
        detection_filter: Optional[DetectionFilter] = None,
        on_crossing: Optional[
            Callable[[Tripwire, Detection, TripwireDirection], None]
        ] = None,
    ):
        """Constructor.

        Args:
            detection_filter (DetectionFilter, optional): Filter applied to current-frame
                detections; None disables filtering.
            on_crossing (Callable, optional): Callback receiving ``(tripwire, detection, direction)``.
        """
        self.detection_filter = detection_filter
        self.on_crossing = on_crossing

    def evaluate(
        self,
        pairs: Sequence[Tuple[Detection, Detection]],
        tripwires: Sequence[Tripwire],
    ) -> List[TripwireCrossing]:
        """Evaluate one frame of matched detection pairs.

        Args:
            pairs (Sequence[Tuple[Detection, Detection]]): ``(previous, current)`` detection pairs.
            tripwires (Sequence[Tripwire]): Tripwire definitions.

        Returns:
            Tripwire crossings, ordered by pair then by tripwire.
        """
        crossings: List[TripwireCrossing] = []
        for prev, curr in pairs:
            if self.detection_filter is not None and not self.detection_filter.accepts(
                curr
            ):
                continue
            for tw in tripwires:
                if not tw.enabled or not tw.is_valid:
                    continue
                direction = classify_crossing(tw, prev.center, curr.center)
                if direction is None:
                    continue
                if tw.direction != TripwireDirection.ANY and tw.direction != direction:
                    continue
                crossings.append(TripwireCrossing(tw, curr, direction))
                if self.on_crossing is not None:
                    self.on_crossing(tw, curr, direction)
        return crossings
