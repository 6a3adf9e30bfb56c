from __future__ import annotations

import math
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Tuple

from common.events import DECISION, EventCallback, emit
from common.geometry import Point2D
from common.logging_setup import get_logger
from common.types import ConfirmedVia, MatchResult, Side, Via
from common.utils import parallel_map_chunks
from via.fusion import FusionParams, confirm_via

log = get_logger("via.match")

Candidate = Tuple[float, int, int]  # (distance, front index, back index)


def _candidate_pairs(
    front: Sequence[Via],
    back: Sequence[Via],
    tolerance: float,
    workers: Optional[int],
) -> List[Candidate]:
    """All (front, back) pairs within `tolerance`, searched in chunks of front indices."""

    def search(start: int, stop: int) -> List[Candidate]:
        local: List[Candidate] = []
        for i in range(start, stop):
            fc = front[i].center
            for j, b in enumerate(back):
                d = fc.distance_to(b.center)
                if d <= tolerance:
                    local.append((d, i, j))
        return local

    return parallel_map_chunks(search, len(front), workers)


def _unmatched_copy(v: Via) -> Via:
    return replace(v, matched_via_id=None, both_sides_confirmed=False)


def match_vias_across_sides(
    front: Sequence[Via],
    back: Sequence[Via],
    tolerance: float,
    *,
    fusion: FusionParams = FusionParams(),
    workers: Optional[int] = None,
    on_event: Optional[EventCallback] = None,
) -> MatchResult:
    """
    Pair front and back vias that sit within `tolerance` pixels of each other
    (both lists already in the same aligned frame).

    Candidate pairs are consumed nearest-first; a pair is accepted only when
    neither via is already taken. Each accepted pair yields one ConfirmedVia.

    The returned MatchResult carries copies of both lists with
    `matched_via_id` / `both_sides_confirmed` set symmetrically; the inputs
    are not modified. Match state carried in from an earlier run is cleared
    first, so every reference points into the returned lists.
    """
    front_out = [_unmatched_copy(v) for v in front]
    back_out = [_unmatched_copy(v) for v in back]
    result = MatchResult(front_vias=front_out, back_vias=back_out)

    if not front or not back:
        result.unmatched = len(front) + len(back)
        emit(on_event, log, "via_match", DECISION, "nothing to match", front=len(front), back=len(back))
        return result

    candidates = _candidate_pairs(front, back, tolerance, workers)
    candidates.sort()

    front_used = [False] * len(front)
    back_used = [False] * len(back)
    total_err = 0.0
    for dist, i, j in candidates:
        if front_used[i] or back_used[j]:
            continue
        front_used[i] = back_used[j] = True
        f, b = front_out[i], back_out[j]
        f.matched_via_id = b.id
        f.both_sides_confirmed = True
        b.matched_via_id = f.id
        b.both_sides_confirmed = True

        cv = confirm_via(f, b, f"cvia-{len(result.confirmed) + 1:03d}", fusion)
        result.confirmed.append(cv)
        result.confirmed_by_via[f.id] = cv.id
        result.confirmed_by_via[b.id] = cv.id
        total_err += dist
        result.max_error = max(result.max_error, dist)

    result.matched = len(result.confirmed)
    result.unmatched = front_used.count(False) + back_used.count(False)
    if result.matched:
        result.avg_error = total_err / result.matched

    emit(
        on_event, log, "via_match", DECISION, "vias matched",
        candidates=len(candidates), matched=result.matched, unmatched=result.unmatched,
        avg_error=result.avg_error, max_error=result.max_error, tolerance=tolerance,
    )
    return result


# -----------------------------
# Post-match helpers
# -----------------------------

def boost_matched_confidence(vias: Sequence[Via], boost: float) -> List[Via]:
    """conf + (1 - conf) * boost for every cross-side confirmed via."""
    out = []
    for v in vias:
        if v.both_sides_confirmed:
            v = replace(v, confidence=v.confidence + (1.0 - v.confidence) * boost)
        out.append(v)
    return out


def filter_unmatched(vias: Sequence[Via]) -> List[Via]:
    """Only vias seen on both sides."""
    return [v for v in vias if v.both_sides_confirmed]


def unmatched_vias(vias: Sequence[Via]) -> List[Via]:
    """Vias seen on one side only (false positives or SMD pads)."""
    return [v for v in vias if not v.both_sides_confirmed]


def average_matched_center(front: Sequence[Via], back: Sequence[Via]) -> Tuple[Optional[Point2D], int]:
    pts = [v.center for v in list(front) + list(back) if v.both_sides_confirmed]
    if not pts:
        return None, 0
    return Point2D(sum(p.x for p in pts) / len(pts), sum(p.y for p in pts) / len(pts)), len(pts)


def validate_alignment_with_vias(front: Sequence[Via], back: Sequence[Via]) -> float:
    """RMS centre distance over matched pairs; 0 when nothing is matched."""
    back_by_id: Dict[str, Via] = {v.id: v for v in back}
    sq = 0.0
    n = 0
    for f in front:
        b = back_by_id.get(f.matched_via_id or "")
        if b is None:
            continue
        sq += (f.center.x - b.center.x) ** 2 + (f.center.y - b.center.y) ** 2
        n += 1
    return math.sqrt(sq / n) if n else 0.0


def separate_by_side(vias: Sequence[Via]) -> Tuple[List[Via], List[Via]]:
    front = [v for v in vias if v.side is Side.FRONT]
    back = [v for v in vias if v.side is not Side.FRONT]
    return front, back


def confirmed_for(result: MatchResult, via_id: str) -> Optional[ConfirmedVia]:
    """ConfirmedVia that a given via was fused into, if any."""
    cid = result.confirmed_by_via.get(via_id)
    if cid is None:
        return None
    return next((cv for cv in result.confirmed if cv.id == cid), None)
