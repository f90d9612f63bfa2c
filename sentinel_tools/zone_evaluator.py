#
# zone_evaluator.py: polygon zone containment evaluation
#
# Copyright DeGirum Corporation 2025
# All rights reserved
#
# Implements classes to test detections against user-defined polygonal zones
#

"""
Zone Evaluator Module Overview
==============================

This module decides which detections lie inside which user-defined polygonal zones. A detection
is inside a zone when its bounding box center lies inside the zone polygon according to the even-odd
ray casting rule, so arbitrary (non-convex) polygons are supported.

Key Features:
    - **Polygon Zones**: Any polygon with at least three vertices; convexity is not required
    - **Detection Filtering**: Class allow-set and per-class minimum score thresholds
    - **Alert Messages**: Human-readable alert line for each zone hit
    - **Dispatcher Hand-off**: Optional callback receiving each ``(zone, detection)`` pair

Typical Usage:
    1. Build `Zone` objects, e.g. with `Zone.from_dict()` from stored editor records
    2. Create a `ZoneEvaluator`, optionally with a `DetectionFilter` and an alert callback
    3. Call `evaluate()` for each frame with the current detections

Key Classes:
    - `Zone`: Polygonal zone definition
    - `DetectionFilter`: Class and score filter shared by zone and tripwire evaluation
    - `ZoneHit`: Result record of a detection inside a zone
    - `ZoneEvaluator`: Per-frame zone evaluation

Integration Notes:
    - Zones with fewer than three points and disabled zones are skipped silently
    - Points exactly on a zone edge may be classified either way
"""

import time, uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from .detections import Detection, Point
from .math_support import point_in_polygon


# default minimum score for detections to take part in rule evaluation
default_min_score = 0.25

# default zone color
default_zone_color = "#ef4444"


def generate_zone_id() -> str:
    """Generate a new unique zone ID of the form ``zone-<ms>-<suffix>``."""
    return f"zone-{int(time.time() * 1000)}-{uuid.uuid4().hex[:5]}"


@dataclass(frozen=True)
class Zone:
    """Polygonal zone definition.

    Attributes:
        id (str): Unique zone identifier.
        label (str): Zone label used in alert messages and payloads.
        points (Tuple[Point, ...]): Polygon vertices in display pixels.
        color (str): Display color.
        enabled (bool): Whether the zone takes part in evaluation.
    """

    id: str
    label: str
    points: Tuple[Point, ...]
    color: str = default_zone_color
    enabled: bool = True

    @property
    def is_valid(self) -> bool:
        """True if the zone has enough vertices to enclose an area."""
        return len(self.points) >= 3

    def contains(self, point) -> bool:
        """Check if a point lies inside the zone polygon."""
        return point_in_polygon(point, self.points)

    @classmethod
    def from_dict(cls, d: dict, index: int = 0) -> "Zone":
        """Build a zone from a stored zone record.

        Args:
            d (dict): Zone record with ``points`` and optional ``id``, ``label``, ``color``
                and ``enabled`` keys.
            index (int, optional): Zero-based zone index used to synthesize a default label.

        Returns:
            Zone object.
        """
        return cls(
            id=str(d.get("id") or generate_zone_id()),
            label=str(d.get("label") or f"Zone {index + 1}"),
            points=tuple(Point.from_any(p) for p in d.get("points", [])),
            color=str(d.get("color", default_zone_color)),
            enabled=bool(d.get("enabled", True)),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "points": [p.to_dict() for p in self.points],
            "color": self.color,
            "enabled": self.enabled,
        }


@dataclass
class DetectionFilter:
    """Class and score filter applied before rule evaluation.

    Attributes:
        allowed_classes (Optional[set]): Class IDs allowed to trigger rules; None allows all.
        min_score (float): Default minimum score.
        min_score_per_class (Dict[int, float]): Per-class minimum score overrides.
    """

    allowed_classes: Optional[set] = None
    min_score: float = default_min_score
    min_score_per_class: Dict[int, float] = field(default_factory=dict)

    def threshold(self, class_id: int) -> float:
        return self.min_score_per_class.get(class_id, self.min_score)

    def accepts(self, detection: Detection) -> bool:
        """Check if detection passes the class allow-set and its class score threshold."""
        if (
            self.allowed_classes is not None
            and detection.class_id not in self.allowed_classes
        ):
            return False
        return detection.score >= self.threshold(detection.class_id)

    def apply(self, detections: Iterable[Detection]) -> List[Detection]:
        return [d for d in detections if self.accepts(d)]


@dataclass(frozen=True)
class ZoneHit:
    """Detection found inside a zone.

    Attributes:
        zone (Zone): Zone containing the detection.
        detection (Detection): Detection whose center lies inside the zone.
        message (str): Alert line, e.g. ``"Door: person 87.5%"``.
    """

    zone: Zone
    detection: Detection
    message: str


def zone_alert_message(zone: Zone, detection: Detection) -> str:
    """Format the alert line for a zone hit."""
    return f"{zone.label}: {detection.label} {detection.score * 100:.1f}%"


class ZoneEvaluator:
    """Evaluates detections against polygonal zones.

    Each enabled zone with at least three points is tested against every detection passing the
    filter. For every containment a `ZoneHit` is produced and, when `on_hit` is given, the
    ``(zone, detection)`` pair is forwarded to it (typically `AlertDispatcher.notify_zone`).
    """

    def __init__(
        self,
        detection_filter: Optional[DetectionFilter] = None,
        on_hit: Optional[Callable[[Zone, Detection], None]] = None,
    ):
        """Constructor.

        Args:
            detection_filter (DetectionFilter, optional): Filter for detections; defaults to a
                filter accepting all classes with score at least 0.25.
            on_hit (Callable, optional): Callback receiving ``(zone, detection)`` for every hit.
        """
        self.detection_filter = (
            detection_filter if detection_filter is not None else DetectionFilter()
        )
        self.on_hit = on_hit

    def evaluate(
        self, zones: Sequence[Zone], detections: Sequence[Detection]
    ) -> List[ZoneHit]:
        """Evaluate one frame of detections.

        Args:
            zones (Sequence[Zone]): Zone definitions.
            detections (Sequence[Detection]): Current frame detections.

        Returns:
            Zone hits, ordered by detection then by zone.
        """
        active = [z for z in zones if z.enabled and z.is_valid]
        hits: List[ZoneHit] = []
        for det in self.detection_filter.apply(detections):
            for zone in active:
                if zone.contains(det.center):
                    hits.append(ZoneHit(zone, det, zone_alert_message(zone, det)))
                    if self.on_hit is not None:
                        self.on_hit(zone, det)
        return hits
