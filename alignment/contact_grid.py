from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from common.events import DECISION, FAILURE, FALLBACK, EventCallback, emit
from common.geometry import RectInt
from common.logging_setup import get_logger
from common.types import Contact, ContactSpec, DetectionPass, Side
from common.utils import MaterialPredicate, gold_predicate, parallel_map_chunks

log = get_logger("alignment.contact_grid")


@dataclass(frozen=True, slots=True)
class ContactParams:
    min_pitch_factor: float = 1.5  # candidate pitch must exceed this x median contact width
    bin_width: float = 1.0
    degenerate_eps: float = 1e-3


@dataclass(slots=True)
class ContactLine:
    """cross = slope * along + intercept (y on x for horizontal rows)."""
    slope: float
    intercept: float
    degenerate: bool = False

    def cross_at(self, along: float) -> float:
        return self.slope * along + self.intercept

    @property
    def angle_deg(self) -> float:
        return math.degrees(math.atan(self.slope))


@dataclass(slots=True)
class ContactRowFit:
    contacts: List[Contact]
    candidates: List[RectInt] = field(default_factory=list)
    scores: List[float] = field(default_factory=list)
    pitch: float = 0.0
    pitch_source: str = ""
    anchor_index: int = -1
    line: Optional[ContactLine] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.reason is None

    def to_dict(self) -> dict:
        return {
            "contacts": [c.to_dict() for c in self.contacts],
            "candidates": len(self.candidates),
            "pitch": self.pitch,
            "pitch_source": self.pitch_source,
            "anchor_index": self.anchor_index,
            "line": None if self.line is None else {
                "slope": self.line.slope, "intercept": self.line.intercept, "degenerate": self.line.degenerate,
            },
            "reason": self.reason,
        }


@dataclass(slots=True)
class ContactRowSeeds:
    """
    Partial detections of one connector edge, handed to `fit_contact_row`.

    Attributes:
        name: label carried into the output, e.g. "J1-top".
        seeds: detected contacts in the front (aligned) frame.
        expected_count: physical contact count of the edge.
        horizontal: row runs along x.
        side: scan the contacts are plated on.
        spec: physical layout, when known.
    """
    name: str
    seeds: List[Contact]
    expected_count: int
    horizontal: bool = True
    side: Side = Side.FRONT
    spec: Optional[ContactSpec] = None

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "ContactRowSeeds":
        count = int(d["count"])
        spec = d.get("spec")
        return cls(
            name=str(d["name"]),
            seeds=[
                Contact.from_rect(RectInt(int(s["x"]), int(s["y"]), int(s["width"]), int(s["height"])))
                for s in d["seeds"]
            ],
            expected_count=count,
            horizontal=bool(d.get("horizontal", True)),
            side=Side(d.get("side", "front")),
            spec=None if spec is None else ContactSpec(count=count, **spec),
        )


def _round_half_up(v: float) -> int:
    return int(math.floor(v + 0.5))


# -----------------------------
# Grid estimation steps
# -----------------------------

def estimate_pitch(positions: Sequence[float], min_pitch: float, bin_width: float = 1.0) -> float:
    """
    Pitch that best explains every pairwise interval.

    Each interval votes for interval/k (k = 1, 2, ...) while that stays
    >= min_pitch; votes fall into bins of `bin_width` centred on multiples of
    it. A vote weighs 1/k: long intervals split into many short candidates that
    would otherwise blanket every bin just above min_pitch. The result is the
    mean of the candidates in the heaviest bin, so any subset of missing
    contacts still agrees on the common divisor.

    Returns 0.0 for fewer than 2 positions or when no interval reaches
    min_pitch; `min_pitch` itself when all positions coincide.
    """
    pos = np.sort(np.asarray(positions, dtype=np.float64))
    if len(pos) < 2:
        return 0.0
    i, j = np.triu_indices(len(pos), k=1)
    intervals = pos[j] - pos[i]
    intervals = intervals[intervals > 0]
    if intervals.size == 0:
        return float(min_pitch)

    min_pitch = max(float(min_pitch), bin_width)
    kmax = np.floor(intervals / min_pitch).astype(int)
    divisors = [np.arange(1, k + 1) for k in kmax if k >= 1]
    if not divisors:
        return 0.0
    votes = np.concatenate([iv / d for iv, d in zip(intervals[kmax >= 1], divisors)])
    weights = 1.0 / np.concatenate(divisors)

    bins = np.floor(votes / bin_width + 0.5).astype(int)
    counts = np.bincount(bins)
    sums = np.bincount(bins, weights=votes)
    best = int(np.argmax(np.bincount(bins, weights=weights)))
    return float(sums[best] / counts[best])


def best_anchor_index(positions: Sequence[float], pitch: float) -> int:
    """Seed whose offsets to all others are closest to whole multiples of `pitch`."""
    pos = np.asarray(positions, dtype=np.float64)
    if len(pos) == 0 or pitch <= 0:
        return 0
    interval = np.abs(pos[None, :] - pos[:, None])
    nearest = np.maximum(1.0, np.floor(interval / pitch + 0.5))
    err = np.abs(interval - nearest * pitch)
    np.fill_diagonal(err, 0.0)
    return int(np.argmin(err.sum(axis=1)))


def fit_contact_line(along: Sequence[float], cross: Sequence[float], eps: float = 1e-3) -> ContactLine:
    """
    OLS of cross against along. Near-zero variance along the row falls back
    to the median cross coordinate with zero slope.
    """
    x = np.asarray(along, dtype=np.float64)
    y = np.asarray(cross, dtype=np.float64)
    n = float(len(x))
    sx, sy = x.sum(), y.sum()
    denom = n * float(np.dot(x, x)) - sx * sx
    if abs(denom) > eps:
        slope = (n * float(np.dot(x, y)) - sx * sy) / denom
        return ContactLine(slope=slope, intercept=(sy - slope * sx) / n)
    return ContactLine(slope=0.0, intercept=float(np.sort(y)[len(y) // 2]), degenerate=True)


def project_grid(
    anchor: float,
    pitch: float,
    along_size: int,
    cross_size: int,
    line: ContactLine,
    extent: float,
    horizontal: bool = True,
) -> List[RectInt]:
    """
    Candidate rectangles at anchor + k*pitch from one image margin to the
    other, ordered along the row.
    """
    half = along_size / 2.0

    def rect_at(center: float) -> RectInt:
        lead = _round_half_up(center - half)
        cross = _round_half_up(line.cross_at(center) - cross_size / 2.0)
        if horizontal:
            return RectInt(lead, cross, along_size, cross_size)
        return RectInt(cross, lead, cross_size, along_size)

    backward: List[RectInt] = []
    k = 0
    while True:
        center = anchor - k * pitch
        if center - half < -along_size:
            break
        backward.append(rect_at(center))
        k += 1

    forward: List[RectInt] = []
    k = 1
    while True:
        center = anchor + k * pitch
        if center - half > extent:
            break
        forward.append(rect_at(center))
        k += 1

    return backward[::-1] + forward


def score_candidates(mask: np.ndarray, rects: Sequence[RectInt], workers: Optional[int] = None) -> List[float]:
    """Fraction of in-image pixels of each rect set in `mask`."""
    h, w = mask.shape[:2]

    def score(start: int, stop: int) -> List[float]:
        local: List[float] = []
        for r in rects[start:stop]:
            c = r.clamp_to(w, h)
            if c.area == 0:
                local.append(0.0)
                continue
            hits = int(np.count_nonzero(mask[c.y : c.y + c.height, c.x : c.x + c.width]))
            local.append(hits / float(c.area))
        return local

    return parallel_map_chunks(score, len(rects), workers)


# -----------------------------
# Row reconstruction
# -----------------------------

def _sizes(seeds: Sequence[Contact], horizontal: bool, dpi: float, spec: Optional[ContactSpec]) -> Tuple[int, int, str]:
    if dpi > 0 and spec is not None and spec.width_in > 0 and spec.height_in > 0:
        return _round_half_up(spec.width_in * dpi), _round_half_up(spec.height_in * dpi), "spec"
    widths = sorted(c.bounds.width for c in seeds)
    heights = sorted(c.bounds.height for c in seeds)
    w, h = widths[len(widths) // 2], heights[len(heights) // 2]
    return (w, h, "seeds") if horizontal else (h, w, "seeds")


def fit_contact_row(
    image_bgr: np.ndarray,
    seeds: Sequence[Contact],
    expected_count: int,
    *,
    horizontal: bool = True,
    dpi: float = 0.0,
    spec: Optional[ContactSpec] = None,
    predicate: Optional[MaterialPredicate] = None,
    params: ContactParams = ContactParams(),
    workers: Optional[int] = None,
    on_event: Optional[EventCallback] = None,
) -> ContactRowFit:
    """
    Rebuild a full row of `expected_count` contacts from a partial seed set.

    Args:
        image_bgr: board image the seeds were detected on.
        seeds: detected contacts (any order, any gaps).
        expected_count: physical contact count of this edge.
        horizontal: row runs along x (top/bottom edge) or along y.
        dpi, spec: physical pitch/size override the seed-derived estimates
            when both are given.
        predicate: contact-material test; defaults to the gold HSV range.

    Returns:
        ContactRowFit. With fewer than 2 seeds (or no usable pitch) the seeds
        are returned unchanged and `reason` says why.
    """
    if len(seeds) < 2:
        emit(on_event, log, "contact_grid", FAILURE, "need at least 2 seeds", seeds=len(seeds))
        return ContactRowFit(contacts=list(seeds), reason="insufficient_seeds")

    def along_of(c: Contact) -> float:
        return c.center.x if horizontal else c.center.y

    def cross_of(c: Contact) -> float:
        return c.center.y if horizontal else c.center.x

    ordered = sorted(seeds, key=along_of)
    along = [along_of(c) for c in ordered]
    cross = [cross_of(c) for c in ordered]

    along_size, cross_size, size_source = _sizes(ordered, horizontal, dpi, spec)
    if dpi > 0 and spec is not None and spec.pitch_in > 0:
        pitch, pitch_source = spec.pitch_in * dpi, "spec"
    else:
        seed_width = sorted(c.bounds.width if horizontal else c.bounds.height for c in ordered)[len(ordered) // 2]
        pitch = estimate_pitch(along, seed_width * params.min_pitch_factor, params.bin_width)
        pitch_source = "histogram"
    emit(on_event, log, "contact_grid", DECISION, f"pitch from {pitch_source}", pitch=pitch, size_source=size_source)
    if pitch <= 0:
        emit(on_event, log, "contact_grid", FAILURE, "no pitch candidate above minimum", seeds=len(seeds))
        return ContactRowFit(contacts=list(seeds), pitch_source=pitch_source, reason="no_pitch")

    line = fit_contact_line(along, cross, params.degenerate_eps)
    if line.degenerate:
        emit(on_event, log, "contact_grid", FALLBACK, "degenerate line fit, using median cross position",
             intercept=line.intercept)

    anchor_idx = best_anchor_index(along, pitch)
    h, w = image_bgr.shape[:2]
    extent = float(w if horizontal else h)
    rects = project_grid(along[anchor_idx], pitch, along_size, cross_size, line, extent, horizontal)

    mask = (predicate or gold_predicate())(image_bgr)
    scores = score_candidates(mask, rects, workers)

    order = sorted(range(len(rects)), key=lambda i: -scores[i])
    keep = sorted(order[: max(0, expected_count)])

    contacts: List[Contact] = []
    for i in keep:
        rect = rects[i]
        center = rect.center
        pos = center.x if horizontal else center.y
        seed = next((s for s in ordered if abs(along_of(s) - pos) <= along_size / 2.0), None)
        contacts.append(Contact(
            bounds=rect,
            center=center,
            pass_=seed.pass_ if seed is not None else DetectionPass.RESCUE,
            confidence=scores[i],
        ))

    emit(
        on_event, log, "contact_grid", DECISION, "contact row reconstructed",
        candidates=len(rects), selected=len(contacts), anchor=anchor_idx,
        line_angle_deg=line.angle_deg, cutoff=scores[order[len(keep) - 1]] if keep else None,
    )
    return ContactRowFit(
        contacts=contacts, candidates=rects, scores=scores,
        pitch=pitch, pitch_source=pitch_source, anchor_index=anchor_idx, line=line,
    )
