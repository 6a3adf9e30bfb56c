"""
DIP pin-grid reconstruction on the solder side.

All pads of a DIP are the same size and sit on a machine-drilled grid, so the
fitter trusts geometry over individual measurements:

  1. rough pad centres near each expected position (adaptive brightness),
  2. radial profiling against the green solder mask; undisturbed pads are
     "pristine" and anchor the grid,
  3. consensus radius from a double 25th percentile,
  4. translation-only grid fit with one outlier-rejection pass,
  5. photometric validation of every fitted position,
  6. pin-1 from the square pad and serpentine numbering.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from common.events import DECISION, FAILURE, FALLBACK, REJECTED, EventCallback, emit
from common.geometry import Point2D, circle_points, points_to_array, square_points
from common.logging_setup import get_logger
from common.types import ExpectedPin, PinRecord
from common.utils import RunningStats, index_percentile, to_hsv
from component.packages import MM_PER_INCH, ComponentPlacement, PackageSpec, parse_dip_pin_count

log = get_logger("component.pins")

NO_PAD = "no_pad"
NO_METALLIC_CENTER = "no_metallic_center"


@dataclass(frozen=True, slots=True)
class PinParams:
    # rough detection
    pad_sat_max: float = 120.0
    min_contrast: float = 40.0
    abs_val_floor: float = 80.0
    search_factor: float = 0.75  # window half-size as a fraction of pitch
    min_search_px: int = 15
    min_pad_pixels: int = 3
    # radial profiling
    max_radial_factor: float = 0.7
    rays: int = 16
    relax_iterations: int = 3
    shift_gain: float = 2.0
    green_hue_min: float = 35.0
    green_hue_max: float = 85.0
    green_sat_min: float = 60.0
    run_length: int = 3
    gradient_peak_min: float = 100.0
    gradient_max_expand: float = 1.5
    pristine_min_rays: int = 8
    pristine_max_rel_std: float = 0.25
    # grid
    min_radius_mm: float = 0.4
    min_pristine: int = 3
    outlier_factor: float = 0.3
    # validation / pin 1
    bright_val_min: float = 100.0
    bright_sat_max: float = 120.0
    validate_inner: float = 0.7
    validate_min_fraction: float = 0.25
    corner_factor: float = 1.15
    pin1_min_bright: int = 3
    confidence: float = 0.9


@dataclass(slots=True)
class SolderSideView:
    """HSV planes and derived masks of the solder-side image, built once per call."""
    hue: np.ndarray
    sat: np.ndarray
    val: np.ndarray
    green: np.ndarray
    metallic: np.ndarray

    @classmethod
    def from_bgr(cls, image_bgr: np.ndarray, params: PinParams = PinParams()) -> "SolderSideView":
        hsv = to_hsv(image_bgr)
        hue = hsv[..., 0].astype(np.float64)
        sat = hsv[..., 1].astype(np.float64)
        val = hsv[..., 2].astype(np.float64)
        green = (hue >= params.green_hue_min) & (hue <= params.green_hue_max) & (sat >= params.green_sat_min)
        metallic = (val > params.bright_val_min) & (sat < params.bright_sat_max)
        return cls(hue=hue, sat=sat, val=val, green=green, metallic=metallic)

    @property
    def width(self) -> int:
        return self.val.shape[1]

    @property
    def height(self) -> int:
        return self.val.shape[0]


@dataclass(slots=True)
class PadProfile:
    center: Point2D
    radius: float
    rel_std: float
    bounded_rays: int
    pristine: bool


@dataclass(slots=True)
class GridFit:
    offset: Point2D
    positions: List[Point2D]
    outliers: List[int] = field(default_factory=list)
    inliers: List[int] = field(default_factory=list)


@dataclass(slots=True)
class PinDetectionResult:
    component_id: str
    pins: List[PinRecord] = field(default_factory=list)
    consensus_radius: float = 0.0
    offset: Point2D = Point2D(0.0, 0.0)
    pin1_corner: int = 0
    pin1_reliable: bool = False
    outliers: List[int] = field(default_factory=list)
    rejected: List[Tuple[int, str]] = field(default_factory=list)
    profiles_pristine: int = 0
    expected_count: int = 0

    def to_dict(self) -> dict:
        return {
            "component_id": self.component_id,
            "pins": [p.to_dict() for p in self.pins],
            "consensus_radius": self.consensus_radius,
            "offset": [self.offset.x, self.offset.y],
            "pin1_corner": self.pin1_corner,
            "pin1_reliable": self.pin1_reliable,
            "outliers": list(self.outliers),
            "rejected": [list(r) for r in self.rejected],
            "profiles_pristine": self.profiles_pristine,
            "expected_count": self.expected_count,
        }


# -----------------------------
# Expected positions
# -----------------------------

def expected_dip_pin_positions(component: ComponentPlacement, package: PackageSpec, dpi: float) -> List[ExpectedPin]:
    """
    Nominal pin centres from the package geometry and the component body.

    Pins run along the long side of the body (vertical when height >= width).
    Row 1 carries pins 1..N/2 in increasing long-axis order, row 2 carries
    N/2+1..N coming back. Empty for anything that is not a DIP grid.
    """
    n = parse_dip_pin_count(package.name) or package.pin_count
    if n < 4 or n % 2:
        return []

    half = n // 2
    pitch = package.pitch_px(dpi)
    row = package.row_spacing_px(dpi)
    center = component.center

    if component.bounds.height >= component.bounds.width:
        long_axis, short_axis = (0.0, 1.0), (1.0, 0.0)
    else:
        long_axis, short_axis = (1.0, 0.0), (0.0, 1.0)

    if component.rotation_deg:
        rad = math.radians(component.rotation_deg)
        c, s = math.cos(rad), math.sin(rad)
        long_axis = (long_axis[0] * c - long_axis[1] * s, long_axis[0] * s + long_axis[1] * c)
        short_axis = (short_axis[0] * c - short_axis[1] * s, short_axis[0] * s + short_axis[1] * c)

    half_center = (half - 1) / 2.0
    pins: List[ExpectedPin] = []
    for number in range(1, n + 1):
        if number <= half:
            row_no = 1
            long_off = (number - 1 - half_center) * pitch
            short_off = -row / 2.0
        else:
            row_no = 2
            long_off = (n - number - half_center) * pitch
            short_off = row / 2.0
        pos = Point2D(
            center.x + long_axis[0] * long_off + short_axis[0] * short_off,
            center.y + long_axis[1] * long_off + short_axis[1] * short_off,
        )
        pins.append(ExpectedPin(number=number, position=pos, row=row_no))
    return pins


# -----------------------------
# Pad measurement
# -----------------------------

def rough_pad_center(view: SolderSideView, near: Point2D, search: int, params: PinParams = PinParams()) -> Optional[Point2D]:
    """
    Brightness-weighted centroid of metallic pixels in a square window
    around `near`. The threshold adapts to the window: 25th-percentile
    brightness plus a contrast margin, never below the absolute floor.
    None when no metallic pad is found.
    """
    cx, cy = int(near.x), int(near.y)
    x0, y0 = max(0, cx - search), max(0, cy - search)
    x1, y1 = min(view.width - 1, cx + search), min(view.height - 1, cy + search)
    if x0 >= x1 or y0 >= y1:
        return None

    v = view.val[y0 : y1 + 1, x0 : x1 + 1]
    s = view.sat[y0 : y1 + 1, x0 : x1 + 1]
    background = index_percentile(v.ravel(), 0.25)
    threshold = max(background + params.min_contrast, params.abs_val_floor)

    low_sat = s < params.pad_sat_max
    peak = float(v[low_sat].max()) if low_sat.any() else 0.0
    if peak < threshold:
        return None

    sel = low_sat & (v >= threshold)
    if int(sel.sum()) < params.min_pad_pixels:
        return None
    ys, xs = np.nonzero(sel)
    w = v[sel]
    return Point2D(float((xs + x0) @ w / w.sum()), float((ys + y0) @ w / w.sum()))


def _ray_samples(view: SolderSideView, cx: float, cy: float, ux: float, uy: float, max_d: int) -> Tuple[np.ndarray, np.ndarray]:
    """Brightness and green flag along one ray, cut at the image border."""
    d = np.arange(max_d + 1, dtype=np.float64)
    px = (cx + ux * d).astype(int)
    py = (cy + uy * d).astype(int)
    outside = np.flatnonzero((px < 0) | (py < 0) | (px >= view.width) | (py >= view.height))
    stop = int(outside[0]) if outside.size else len(d)
    px, py = px[:stop], py[:stop]
    return view.val[py, px], view.green[py, px]


def _green_ring_edge(green: np.ndarray, run: int, max_dist: float) -> float:
    """Outside-in: enter the green ring, then leave it through `run` non-green pixels."""
    found = False
    g_run = ng_run = 0
    for d in range(len(green) - 1, 0, -1):
        if green[d]:
            g_run += 1
            ng_run = 0
            if g_run >= run:
                found = True
        else:
            g_run = 0
            if found:
                ng_run += 1
                if ng_run >= run:
                    return float(d + run)
    return max_dist


def _brightness_edge(val: np.ndarray, run: int, max_dist: float, peak_min: float) -> float:
    """First sustained drop below the midpoint of peak and outer-quarter background."""
    n = len(val)
    if n <= 6:
        return max_dist
    peak_d = int(np.argmax(val))
    peak = float(val[peak_d])
    if peak <= peak_min:
        return max_dist
    background = float(val[n * 3 // 4 :].mean())
    threshold = (peak + background) / 2.0
    below = 0
    for d in range(peak_d, n):
        if val[d] < threshold:
            below += 1
            if below >= run:
                return float(d - below + 1)
        else:
            below = 0
    return max_dist


def radial_scan_to_green(
    view: SolderSideView,
    center: Point2D,
    max_dist: float,
    params: PinParams = PinParams(),
) -> np.ndarray:
    """
    Pad boundary distance along each of `params.rays` rays.

    The green-ring edge is primary; the brightness edge replaces it when it
    lies beyond the ring edge by no more than `gradient_max_expand` and both
    stayed inside `max_dist` (solder reflections make the ring scan short).
    Rays that never find the edge report `max_dist`.
    """
    n = params.rays
    max_d = int(max_dist)
    out = np.full(n, float(max_dist))
    for i in range(n):
        angle = i * 2.0 * math.pi / n
        val, green = _ray_samples(view, center.x, center.y, math.cos(angle), math.sin(angle), max_d)
        ring = _green_ring_edge(green, params.run_length, max_dist)
        grad = _brightness_edge(val, params.run_length, max_dist, params.gradient_peak_min)
        dist = ring
        if ring < max_dist and ring < grad < max_dist and grad <= ring * params.gradient_max_expand:
            dist = grad
        out[i] = dist
    return out


def refine_center_from_green(
    view: SolderSideView,
    start: Point2D,
    max_dist: float,
    params: PinParams = PinParams(),
) -> Point2D:
    """Relax the centre toward the middle of the green boundary (first radial harmonic)."""
    n = params.rays
    angles = np.arange(n) * (2.0 * math.pi / n)
    cos_a, sin_a = np.cos(angles), np.sin(angles)
    x, y = start.x, start.y
    for _ in range(params.relax_iterations):
        dist = radial_scan_to_green(view, Point2D(x, y), max_dist, params)
        x += params.shift_gain / n * float(dist @ cos_a)
        y += params.shift_gain / n * float(dist @ sin_a)
    return Point2D(x, y)


def profile_pad(view: SolderSideView, rough: Point2D, max_dist: float, params: PinParams = PinParams()) -> PadProfile:
    center = refine_center_from_green(view, rough, max_dist, params)
    dist = radial_scan_to_green(view, center, max_dist, params)
    bounded = dist[dist < max_dist - 1]

    radius, rel_std = 0.0, 1.0
    if bounded.size:
        radius = index_percentile(bounded, 0.25)
        stats = RunningStats()
        for d in bounded:
            stats.add(float(d))
        if stats.mean > 0:
            rel_std = stats.population_std / stats.mean

    pristine = bounded.size >= params.pristine_min_rays and rel_std < params.pristine_max_rel_std
    return PadProfile(center=center, radius=radius, rel_std=rel_std, bounded_rays=int(bounded.size), pristine=pristine)


def consensus_radius(radii: Sequence[float], min_radius: float) -> float:
    """25th percentile of the per-pad radii, floored at `min_radius`."""
    usable = [r for r in radii if r > 0]
    if not usable:
        return min_radius
    return max(index_percentile(usable, 0.25), min_radius)


# -----------------------------
# Grid fit
# -----------------------------

def fit_rigid_grid(
    expected: Sequence[Point2D],
    detected: Sequence[Optional[Point2D]],
    pitch: float,
    outlier_factor: float = 0.3,
) -> GridFit:
    """
    Translation-only fit of the expected grid onto detected centres.

    `detected[i]` is None where pin i has no usable measurement. The first
    pass averages every measurement, drops residuals above
    outlier_factor * pitch, and the second pass refits from the survivors.
    Rotation is never fitted: drilled DIP grids are axis-aligned and any
    apparent tilt comes from solder pulling the centres.
    """
    if len(expected) != len(detected):
        raise ValueError(f"length mismatch: {len(expected)} expected vs {len(detected)} detected")
    exp = points_to_array(expected).reshape(-1, 2)
    usable = np.array([p is not None for p in detected], dtype=bool)
    det = np.array([(p.x, p.y) if p is not None else (0.0, 0.0) for p in detected], dtype=np.float64).reshape(-1, 2)

    inlier = usable.copy()
    outliers: List[int] = []
    positions = exp
    offset = np.zeros(2)
    for pass_ in range(2):
        if not inlier.any():
            return GridFit(offset=Point2D(0.0, 0.0), positions=list(expected), outliers=outliers)
        offset = (det[inlier] - exp[inlier]).mean(axis=0)
        positions = exp + offset
        if pass_ == 0:
            resid = np.where(usable, np.linalg.norm(det - positions, axis=1), np.inf)
            inlier = usable & (resid <= pitch * outlier_factor)
            outliers = np.flatnonzero(usable & ~inlier).tolist()

    return GridFit(
        offset=Point2D(float(offset[0]), float(offset[1])),
        positions=[Point2D(float(x), float(y)) for x, y in positions],
        outliers=outliers,
        inliers=np.flatnonzero(inlier).tolist(),
    )


# -----------------------------
# Validation and pin 1
# -----------------------------

def validate_pad_center(view: SolderSideView, center: Point2D, radius: float, params: PinParams = PinParams()) -> bool:
    """At least `validate_min_fraction` of the inner disk (0.7 r) is metallic."""
    check = params.validate_inner * radius
    r = int(check) + 1
    dy, dx = np.mgrid[-r : r + 1, -r : r + 1]
    disk = (dx * dx + dy * dy) <= check * check
    px = int(center.x) + dx[disk]
    py = int(center.y) + dy[disk]
    in_img = (px >= 0) & (py >= 0) & (px < view.width) & (py < view.height)
    total = int(in_img.sum())
    if total == 0:
        return False
    metallic = int(view.metallic[py[in_img], px[in_img]].sum())
    return metallic / total >= params.validate_min_fraction


def count_square_corners(view: SolderSideView, center: Point2D, radius: float, params: PinParams = PinParams()) -> int:
    """
    Bright samples among the 4 diagonals at corner_factor * r from the centre.
    A square pad is still metal there; a round pad shows solder mask.
    """
    d = radius * params.corner_factor / math.sqrt(2.0)
    bright = 0
    for ox, oy in ((d, d), (d, -d), (-d, d), (-d, -d)):
        px, py = int(center.x + ox), int(center.y + oy)
        if 0 <= px < view.width and 0 <= py < view.height and view.metallic[py, px]:
            bright += 1
    return bright


def corner_indices(n: int) -> List[int]:
    """Grid indices of the four row ends: [0, N/2 - 1, N/2, N - 1]."""
    half = n // 2
    return [0, half - 1, half, n - 1]


def identify_pin1_corner(bright_counts: Sequence[Optional[int]], min_bright: int = 3) -> Tuple[int, bool]:
    """
    Pick the corner with the most bright diagonals.

    `bright_counts[c]` is None for corners whose pad failed validation.
    Returns (corner, reliable); without a corner reaching `min_bright` the
    first valid corner (or 0) is returned with reliable=False.
    """
    best, best_count = -1, 0
    for c, count in enumerate(bright_counts):
        if count is not None and count > best_count:
            best, best_count = c, count
    if best >= 0 and best_count >= min_bright:
        return best, True
    first = next((c for c, count in enumerate(bright_counts) if count is not None), 0)
    return first, False


def pin_numbers_for_corner(corner: int, n: int) -> List[int]:
    """
    Pin number for each grid index given where pin 1 sits.

    Grid index order is the expected-position order: row 1 top to bottom,
    then row 2 bottom to top.
    """
    half = n // 2
    if corner == 0:
        return [i + 1 for i in range(n)]
    if corner == 1:
        return [half - i for i in range(half)] + [n + half - i for i in range(half, n)]
    if corner == 2:
        return [half + 1 + i for i in range(half)] + [i - half + 1 for i in range(half, n)]
    if corner == 3:
        return [n - i for i in range(n)]
    raise ValueError(f"corner must be 0..3, got {corner}")


# -----------------------------
# Orchestration
# -----------------------------

def detect_pins(
    solder_bgr: np.ndarray,
    component: ComponentPlacement,
    package: PackageSpec,
    dpi: float,
    *,
    params: PinParams = PinParams(),
    on_event: Optional[EventCallback] = None,
) -> PinDetectionResult:
    """
    Find, validate and number every pin of a DIP component.

    Args:
        solder_bgr: solder-side image in the same frame as `component.bounds`.
        component: placement (bounds, rotation) of the body.
        package: pin-grid geometry.
        dpi: scan resolution.

    Returns:
        PinDetectionResult. Pins that were not found or failed validation are
        absent from `pins` and listed in `rejected` with a reason.
    """
    result = PinDetectionResult(component_id=component.id)
    expected = expected_dip_pin_positions(component, package, dpi)
    result.expected_count = len(expected)
    if not expected:
        emit(on_event, log, "pins", FAILURE, "package has no DIP pin grid",
             component=component.id, package=package.name)
        return result

    view = SolderSideView.from_bgr(solder_bgr, params)
    n = len(expected)
    pitch = package.pitch_px(dpi)
    search = max(params.min_search_px, int(pitch * params.search_factor))
    max_dist = pitch * params.max_radial_factor
    min_radius = params.min_radius_mm / MM_PER_INCH * dpi

    profiles: List[Optional[PadProfile]] = []
    for i, ep in enumerate(expected):
        rough = rough_pad_center(view, ep.position, search, params)
        if rough is None:
            result.rejected.append((i, NO_PAD))
            emit(on_event, log, "pins", REJECTED, "no pad near expected position",
                 component=component.id, index=i, reason=NO_PAD, x=ep.position.x, y=ep.position.y)
            profiles.append(None)
            continue
        profiles.append(profile_pad(view, rough, max_dist, params))

    detected = [p for p in profiles if p is not None]
    radius = consensus_radius([p.radius for p in detected], min_radius)
    result.consensus_radius = radius
    result.profiles_pristine = sum(1 for p in detected if p.pristine)
    emit(on_event, log, "pins", DECISION, "consensus radius",
         component=component.id, radius=radius, detected=len(detected), pristine=result.profiles_pristine)

    if result.profiles_pristine >= params.min_pristine:
        anchors = [p.center if p is not None and p.pristine else None for p in profiles]
    else:
        anchors = [p.center if p is not None else None for p in profiles]
        emit(on_event, log, "pins", FALLBACK, "too few pristine pads, fitting on all detected",
             component=component.id, pristine=result.profiles_pristine, detected=len(detected))

    fit = fit_rigid_grid([ep.position for ep in expected], anchors, pitch, params.outlier_factor)
    result.offset = fit.offset
    result.outliers = fit.outliers
    for i in fit.outliers:
        emit(on_event, log, "pins", REJECTED, "grid fit outlier", component=component.id, index=i)

    valid = [False] * n
    for i, p in enumerate(profiles):
        if p is None:
            continue
        if validate_pad_center(view, fit.positions[i], radius, params):
            valid[i] = True
        else:
            result.rejected.append((i, NO_METALLIC_CENTER))
            pos = fit.positions[i]
            emit(on_event, log, "pins", REJECTED, "no metallic centre at fitted position",
                 component=component.id, index=i, reason=NO_METALLIC_CENTER, x=pos.x, y=pos.y, radius=radius)

    bright = [
        count_square_corners(view, fit.positions[idx], radius, params) if valid[idx] else None
        for idx in corner_indices(n)
    ]
    corner, reliable = identify_pin1_corner(bright, params.pin1_min_bright)
    result.pin1_corner, result.pin1_reliable = corner, reliable
    if reliable:
        emit(on_event, log, "pins", DECISION, "pin 1 located", component=component.id, corner=corner, bright=bright)
    else:
        emit(on_event, log, "pins", FALLBACK, "no square pad found, defaulting pin 1 corner",
             component=component.id, corner=corner, bright=bright)

    numbers = pin_numbers_for_corner(corner, n)
    for i in range(n):
        if not valid[i]:
            continue
        center = fit.positions[i]
        boundary = square_points(center, radius) if numbers[i] == 1 else circle_points(center, radius, 32)
        result.pins.append(PinRecord(
            component_id=component.id,
            pin_number=numbers[i],
            center=center,
            radius=radius,
            boundary=boundary,
            confidence=params.confidence,
        ))
    result.pins.sort(key=lambda p: p.pin_number)

    emit(on_event, log, "pins", DECISION, "pins validated",
         component=component.id, valid=len(result.pins), detected=len(detected), expected=n)
    return result
