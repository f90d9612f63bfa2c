#
# object_associator.py: frame-to-frame detection association
#
# Copyright DeGirum Corporation 2025
# All rights reserved
#
# Implements greedy nearest-neighbour matching of detections between consecutive frames
#

"""
Object Associator Module Overview
=================================

This module pairs detections of the current frame with detections of the previous frame so that
crossing direction can be estimated without persistent track IDs. Association is one frame deep:
nothing is remembered beyond the previous detection list.

Each current detection, in input order, claims the nearest unclaimed previous detection of the same
class, provided the center-to-center distance does not exceed the association threshold.
Matching is greedy, not globally optimal. Unmatched current detections produce no pair.

Key Functions:
    - `max_association_distance()`: Association threshold for a display size
    - `associate()`: Match current detections against previous ones
"""

from typing import List, Sequence, Tuple
from .detections import Detection
from .math_support import distance


# minimum association distance in display pixels
min_association_distance = 20.0

# association distance as a fraction of the smaller display dimension
association_distance_ratio = 0.12


def max_association_distance(width: float, height: float) -> float:
    """Return the maximum center displacement accepted between frames.

    Args:
        width (float): Display width in pixels.
        height (float): Display height in pixels.

    Returns:
        ``max(20, 0.12 * min(width, height))``.
    """
    return max(min_association_distance, association_distance_ratio * min(width, height))


def associate(
    current: Sequence[Detection],
    previous: Sequence[Detection],
    max_distance: float,
) -> List[Tuple[Detection, Detection]]:
    """Greedily match current detections to previous ones.

    Args:
        current (Sequence[Detection]): Detections of the current frame.
        previous (Sequence[Detection]): Detections of the previous frame.
        max_distance (float): Maximum center distance for a match (inclusive).

    Returns:
        List of ``(previous, current)`` pairs; each previous detection appears at most once.
    """
    claimed = [False] * len(previous)
    pairs: List[Tuple[Detection, Detection]] = []

    for cur in current:
        best_idx = -1
        best_dist = float("inf")
        for idx, prev in enumerate(previous):
            if claimed[idx] or prev.class_id != cur.class_id:
                continue
            d = distance(prev.center, cur.center)
            if d < best_dist:
                best_dist = d
                best_idx = idx

        if best_idx >= 0 and best_dist <= max_distance:
            claimed[best_idx] = True
            pairs.append((previous[best_idx], cur))

    return pairs
