from __future__ import annotations

from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

import numpy as np

from common.geometry import Point2D, circle_points, convex_hull, points_to_array
from common.types import ConfirmedVia, Via


@dataclass(frozen=True, slots=True)
class FusionParams:
    shrink: float = 0.95
    confidence_boost: float = 1.2
    boundary_points: int = 32
    min_radius: float = 1.0


def fused_confidence(a: float, b: float, boost: float = 1.2) -> float:
    """Cross-side confirmation: average confidence boosted, capped at 1.0."""
    return min(1.0, (a + b) / 2.0 * boost)


def _fit_points(points: List[Point2D], fallback_radius: float, clamp_radius: float, params: FusionParams) -> Tuple[Point2D, float]:
    hull = convex_hull(points)
    arr = points_to_array(points)
    cx, cy = arr.mean(axis=0)
    hull_arr = points_to_array(hull)
    max_dist = float(np.max(np.hypot(hull_arr[:, 0] - cx, hull_arr[:, 1] - cy)))
    radius = params.shrink * max_dist
    if radius < params.min_radius:
        radius = fallback_radius
    # never wider than the larger per-side pad
    radius = min(radius, clamp_radius)
    return Point2D(float(cx), float(cy)), radius


def fuse_boundaries(front: Via, back: Via, params: FusionParams = FusionParams()) -> Tuple[Point2D, float, List[Point2D]]:
    """
    Merge two per-side observations of one via.

    Returns:
        (center, radius, boundary) where boundary is a circle polygon of
        `params.boundary_points` vertices.
    """
    mean_radius = (front.radius + back.radius) / 2.0
    clamp_radius = max(front.radius, back.radius)
    f_pts = front.pad_boundary if front.pad_boundary and len(front.pad_boundary) >= 3 else None
    b_pts = back.pad_boundary if back.pad_boundary and len(back.pad_boundary) >= 3 else None

    if f_pts and b_pts:
        center, radius = _fit_points(list(f_pts) + list(b_pts), mean_radius, clamp_radius, params)
    elif f_pts or b_pts:
        center, radius = _fit_points(list(f_pts or b_pts), mean_radius, clamp_radius, params)
    else:
        center, radius = Point2D.midpoint(front.center, back.center), mean_radius

    return center, radius, circle_points(center, radius, params.boundary_points)


def confirm_via(front: Via, back: Via, confirmed_id: str, params: FusionParams = FusionParams()) -> ConfirmedVia:
    center, radius, boundary = fuse_boundaries(front, back, params)
    return ConfirmedVia(
        id=confirmed_id,
        front_via_id=front.id,
        back_via_id=back.id,
        center=center,
        radius=radius,
        intersection_boundary=boundary,
        confidence=fused_confidence(front.confidence, back.confidence, params.confidence_boost),
    )


def refine_confirmed_via(
    confirmed: ConfirmedVia,
    front: Via,
    back: Via,
    params: FusionParams = FusionParams(),
) -> ConfirmedVia:
    """Recompute after either side's boundary changed; the id is preserved."""
    if front.id != confirmed.front_via_id or back.id != confirmed.back_via_id:
        raise ValueError(
            f"{confirmed.id} pairs {confirmed.front_via_id}/{confirmed.back_via_id}, got {front.id}/{back.id}"
        )
    center, radius, boundary = fuse_boundaries(front, back, params)
    return replace(
        confirmed,
        center=center,
        radius=radius,
        intersection_boundary=boundary,
        confidence=fused_confidence(front.confidence, back.confidence, params.confidence_boost),
    )


def find_confirmed_at(confirmed: List[ConfirmedVia], x: float, y: float) -> Optional[ConfirmedVia]:
    for cv in confirmed:
        if cv.hit_test(x, y):
            return cv
    return None
