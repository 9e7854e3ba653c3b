# src/trimtrees/algos/edge_vector.py
#
# Directional scoring for advancing / retreating district edges.
# - Straight edge: score is the signed distance along the vector direction,
#   measured from the vector origin (a ruler laid across the district).
# - Pivoting edge: score is the signed angle swept around the origin (the pivot),
#   with `sign` telling which rotation is "forward".
#
# All measurements are planar. Points are anything indexable as (x, y).
#
from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Iterable, Optional, Sequence

import numpy as np

TAU = 2.0 * math.pi


@dataclass
class EdgeVector:
    x: float
    y: float
    dx: float
    dy: float
    sign: Optional[int] = None  # +1 / -1 when the edge pivots about (x, y)

    @classmethod
    def toward(cls, origin: Sequence[float], target: Sequence[float]) -> "EdgeVector":
        """Vector anchored at origin pointing at target."""
        ox, oy = float(origin[0]), float(origin[1])
        return cls(x=ox, y=oy, dx=float(target[0]) - ox, dy=float(target[1]) - oy)

    @property
    def origin(self) -> tuple[float, float]:
        return (self.x, self.y)

    @property
    def pivoted(self) -> bool:
        return self.sign is not None

    def moved_to(self, point: Sequence[float]) -> "EdgeVector":
        return replace(self, x=float(point[0]), y=float(point[1]))

    def perpendicular(self) -> "EdgeVector":
        # rotate direction by +90 degrees
        return replace(self, dx=-self.dy, dy=self.dx)

    def without_pivot(self) -> "EdgeVector":
        return replace(self, sign=None)


def distance(p0: Sequence[float], p1: Sequence[float]) -> float:
    return math.hypot(float(p0[0]) - float(p1[0]), float(p0[1]) - float(p1[1]))


def angle_distance(v0: EdgeVector, v1: EdgeVector) -> float:
    """
    Radians from v0's direction to v1's direction.

    If v0 carries a sign, the result is forced to rotate that way
    (sign < 0 -> (-TAU, 0], sign > 0 -> [0, TAU)); otherwise the
    shortest rotation in (-pi, pi] is returned. Zero vectors give 0.0.
    """
    if (v0.dx == 0.0 and v0.dy == 0.0) or (v1.dx == 0.0 and v1.dy == 0.0):
        return 0.0
    dtheta = math.atan2(v1.dy, v1.dx) - math.atan2(v0.dy, v0.dx)
    if v0.sign is not None:
        if v0.sign < 0 and dtheta > 0:
            dtheta -= TAU
        elif v0.sign > 0 and dtheta < 0:
            dtheta += TAU
    else:
        if dtheta > math.pi:
            dtheta -= TAU
        elif dtheta <= -math.pi:
            dtheta += TAU
    return dtheta


def perpendicular_distance(p: Sequence[float], v: EdgeVector) -> float:
    """
    Signed distance from v's origin to the foot of the perpendicular dropped
    from p onto the line through v. Positive means p lies ahead of the origin.
    A vector without direction degrades to plain point distance.
    """
    px, py = float(p[0]), float(p[1])
    if v.dx == 0 and v.dy == 0:
        return math.hypot(px - v.x, py - v.y)
    return ((px - v.x) * v.dx + (py - v.y) * v.dy) / math.hypot(v.dx, v.dy)


def perpendicular_distances(points: np.ndarray, v: EdgeVector) -> np.ndarray:
    """Vectorized perpendicular_distance over an (N, 2) array."""
    pts = np.asarray(points, dtype=float).reshape(-1, 2)
    rel_x = pts[:, 0] - v.x
    rel_y = pts[:, 1] - v.y
    if v.dx == 0 and v.dy == 0:
        return np.hypot(rel_x, rel_y)
    return (rel_x * v.dx + rel_y * v.dy) / math.hypot(v.dx, v.dy)


def edge_score(p: Sequence[float], v: EdgeVector) -> float:
    """
    Position of p relative to the edge described by v. Lower scores are behind
    the edge (consumed first when growing, shed last when trimming).

    Pivoting edges map the swept angle into [-TAU/2, TAU/2), with the
    vector's own direction landing at TAU/4.
    """
    if v.sign is None:
        return perpendicular_distance(p, v)
    offset = EdgeVector(x=v.x, y=v.y, dx=float(p[0]) - v.x, dy=float(p[1]) - v.y)
    score = v.sign * angle_distance(v, offset) - 0.75 * TAU
    if score < -TAU / 2:
        score += TAU
    return score


def edge_length(v: EdgeVector, edge_blocks: Iterable[int], coords: np.ndarray) -> Optional[float]:
    """
    Approximate length of an edge made of the given blocks.

    Two passes: pick the most extreme block (farthest from the pivot, or the
    farthest along a ruler laid perpendicular to v), then return the largest
    distance from that block to any other edge block.
    Returns None for an empty edge.
    """
    blocks = list(edge_blocks)
    if not blocks:
        return None
    pts = np.asarray(coords, dtype=float)[blocks]

    if v.pivoted:
        extent = np.hypot(pts[:, 0] - v.x, pts[:, 1] - v.y)
    else:
        extent = perpendicular_distances(pts, v.perpendicular())

    i0 = int(np.argmax(extent))
    spans = np.hypot(pts[:, 0] - pts[i0, 0], pts[:, 1] - pts[i0, 1])
    return float(spans.max())
