from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import List, Optional, Sequence

import numpy as np

from common.events import DECISION, FAILURE, EventCallback, emit
from common.geometry import AffineTransform, Point2D, centroid
from common.logging_setup import get_logger
from common.types import MatchResult, Side, Via
from via.detector import detect_vias
from via.match import match_vias_across_sides
from via.params import ViaParams
from alignment.transform import alignment_error, estimate_affine_ransac

log = get_logger("alignment.via_align")

NOT_ENOUGH_VIAS = "not_enough_vias"
NOT_ENOUGH_MATCHES = "not_enough_matches"
TRANSFORM_FAILED = "transform_failed"


@dataclass(frozen=True, slots=True)
class AlignmentParams:
    match_tolerance_in: float = 0.1  # wide; RANSAC removes the wrong pairs
    min_tolerance_px: float = 30.0
    min_vias: int = 3
    min_matched: int = 3
    ransac_iterations: int = 2000
    ransac_threshold: float = 3.0
    seed: Optional[int] = None

    def tolerance_px(self, dpi: float) -> float:
        return max(self.match_tolerance_in * dpi, self.min_tolerance_px)


@dataclass(slots=True)
class ViaAlignment:
    """
    Back -> front registration from vias seen on both sides.

    `front_vias` / `back_vias` are in their own image coordinates, with the
    cross-side match flags set. `inliers` index the matched pairs used by the
    final affine.
    """
    ok: bool
    transform: Optional[AffineTransform] = None
    front_vias: List[Via] = field(default_factory=list)
    back_vias: List[Via] = field(default_factory=list)
    matched: int = 0
    inliers: List[int] = field(default_factory=list)
    avg_error: float = float("inf")
    reason: Optional[str] = None
    match: Optional[MatchResult] = None

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "transform": self.transform.to_dict() if self.transform else None,
            "front_vias": len(self.front_vias),
            "back_vias": len(self.back_vias),
            "matched": self.matched,
            "inliers": len(self.inliers),
            "avg_error": self.avg_error,
            "reason": self.reason,
        }


def align_with_vias(
    front_bgr: np.ndarray,
    back_bgr: np.ndarray,
    dpi: float,
    *,
    via_params: ViaParams = ViaParams(),
    params: AlignmentParams = AlignmentParams(),
    workers: Optional[int] = None,
    rng: Optional[np.random.Generator] = None,
    on_event: Optional[EventCallback] = None,
    front_vias: Optional[Sequence[Via]] = None,
) -> ViaAlignment:
    """
    Detect vias on both scans and fit the affine mapping back -> front.

    The scans are cropped independently, so the back vias are first shifted
    by the centroid difference, matched with a wide tolerance, and the affine
    is then fitted on the original (unshifted) coordinates.

    `front_vias` lets a caller that already ran detection on the front scan
    skip the second pass; the front never moves, so those detections stay valid.
    """
    if front_vias is None:
        front = detect_vias(front_bgr, Side.FRONT, via_params, dpi, on_event).vias
    else:
        front = list(front_vias)
    back = detect_vias(back_bgr, Side.BACK, via_params, dpi, on_event).vias

    if len(front) < params.min_vias or len(back) < params.min_vias:
        emit(on_event, log, "via_align", FAILURE, "not enough vias",
             front=len(front), back=len(back), required=params.min_vias)
        return ViaAlignment(ok=False, front_vias=front, back_vias=back, reason=NOT_ENOUGH_VIAS)

    fc = centroid([v.center for v in front])
    bc = centroid([v.center for v in back])
    dx, dy = fc.x - bc.x, fc.y - bc.y
    shifted = [replace(v, center=v.center.offset(dx, dy)) for v in back]

    tolerance = params.tolerance_px(dpi)
    emit(on_event, log, "via_align", DECISION, "centroid offset removed", dx=dx, dy=dy, tolerance=tolerance)
    match = match_vias_across_sides(front, shifted, tolerance, workers=workers, on_event=on_event)

    # flags from the match, coordinates from the original back scan
    back_out = [replace(orig, matched_via_id=m.matched_via_id, both_sides_confirmed=m.both_sides_confirmed)
                for orig, m in zip(back, match.back_vias)]
    front_out = match.front_vias

    if match.matched < params.min_matched:
        emit(on_event, log, "via_align", FAILURE, "not enough matched vias",
             matched=match.matched, required=params.min_matched)
        return ViaAlignment(ok=False, front_vias=front_out, back_vias=back_out,
                            matched=match.matched, reason=NOT_ENOUGH_MATCHES, match=match)

    front_by_id = {v.id: v for v in front_out}
    back_by_id = {v.id: v for v in back_out}
    front_pts: List[Point2D] = []
    back_pts: List[Point2D] = []
    for cv in match.confirmed:
        front_pts.append(front_by_id[cv.front_via_id].center)
        back_pts.append(back_by_id[cv.back_via_id].center)

    rng = rng or np.random.default_rng(params.seed)
    fit = estimate_affine_ransac(
        back_pts, front_pts, params.ransac_iterations, params.ransac_threshold,
        rng=rng, on_event=on_event,
    )
    if not fit.ok:
        return ViaAlignment(ok=False, front_vias=front_out, back_vias=back_out,
                            matched=match.matched, inliers=fit.inliers, reason=TRANSFORM_FAILED, match=match)

    used_back = [back_pts[i] for i in fit.inliers]
    used_front = [front_pts[i] for i in fit.inliers]
    err = alignment_error(used_back, used_front, fit.transform)
    emit(on_event, log, "via_align", DECISION, "via alignment computed",
         pairs=len(front_pts), inliers=len(fit.inliers), avg_error=err,
         rotation_deg=fit.transform.rotation_deg, scale=fit.transform.scale)
    return ViaAlignment(
        ok=True, transform=fit.transform, front_vias=front_out, back_vias=back_out,
        matched=match.matched, inliers=fit.inliers, avg_error=err, match=match,
    )
