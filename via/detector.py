from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import cv2
import numpy as np

from common.errors import InsufficientInput
from common.events import DECISION, EventCallback, emit
from common.geometry import Point2D, RectInt, array_to_points
from common.logging_setup import get_logger
from common.types import DetectionMethod, Side, Via
from common.utils import index_percentile, to_gray, to_hsv
from via.params import ViaParams

log = get_logger("via.detector")

SYMMETRY_RAYS = 32
SYMMETRY_OUTLIER_FACTOR = 1.5

# click lookup (detect_via_at_point)
CLICK_GRAY_THRESHOLD = 140
CLICK_RAYS = 32
CLICK_ITERATIONS = 3
CLICK_MIN_RADIUS_IN = 0.008
CLICK_MAX_RADIUS_IN = 0.065


@dataclass(slots=True)
class ViaDetectionResult:
    side: Side
    vias: List[Via] = field(default_factory=list)
    dpi: float = 0.0
    hough_count: int = 0
    contour_count: int = 0
    duplicates_removed: int = 0

    def to_dict(self) -> dict:
        return {
            "side": self.side.value,
            "dpi": self.dpi,
            "vias": [v.to_dict() for v in self.vias],
            "hough_count": self.hough_count,
            "contour_count": self.contour_count,
            "duplicates_removed": self.duplicates_removed,
        }


# -----------------------------
# Ray casting
# -----------------------------

def ray_directions(n: int) -> Tuple[np.ndarray, np.ndarray]:
    angles = np.arange(n) * (2.0 * math.pi / n)
    return np.cos(angles), np.sin(angles)


def walk_rays(
    inside: np.ndarray,
    cx: float,
    cy: float,
    n_rays: int,
    max_walk: float,
    off_image: Optional[float] = None,
    no_hit: Optional[float] = None,
) -> np.ndarray:
    """
    Distance along each of `n_rays` evenly spaced rays to the first pixel
    that is not `inside`.

    Args:
        inside: bool mask (H,W).
        cx, cy: ray origin.
        n_rays: number of rays starting at angle 0.
        max_walk: longest walk in pixels.
        off_image: length reported when a ray leaves the image; None treats
            leaving the image as an ordinary boundary.
        no_hit: length reported by rays that stay inside for the whole
            walk; defaults to max_walk.

    Returns:
        float array of length n_rays.
    """
    h, w = inside.shape[:2]
    cos_a, sin_a = ray_directions(n_rays)
    steps = np.arange(1.0, math.floor(max_walk) + 1.0)
    out = np.full(n_rays, float(max_walk if no_hit is None else no_hit))
    if steps.size == 0:
        return out
    for i in range(n_rays):
        px = np.floor(cx + cos_a[i] * steps + 0.5).astype(int)
        py = np.floor(cy + sin_a[i] * steps + 0.5).astype(int)
        in_img = (px >= 0) & (px < w) & (py >= 0) & (py < h)
        hit = ~in_img
        hit[in_img] = ~inside[py[in_img], px[in_img]]
        idx = np.flatnonzero(hit)
        if idx.size == 0:
            continue
        k = int(idx[0])
        if not in_img[k] and off_image is not None:
            out[i] = off_image
        else:
            out[i] = steps[k]
    return out


def radial_symmetry(inside: np.ndarray, center: Point2D, radius: float) -> float:
    """
    1.0 for a perfect disk; traces leaving the pad become outlier rays and
    lower the score through the inlier fraction.
    """
    dists = walk_rays(inside, center.x, center.y, SYMMETRY_RAYS, radius * 3.0)
    median = float(np.sort(dists)[SYMMETRY_RAYS // 2])
    if median < 2.0:
        return 0.0
    inliers = dists[dists <= median * SYMMETRY_OUTLIER_FACTOR]
    if inliers.size < 4:
        return 0.0
    fraction = inliers.size / SYMMETRY_RAYS
    uniformity = max(0.0, 1.0 - float(inliers.std()) / float(inliers.mean()))
    return fraction * uniformity


def _disk_fill(inside: np.ndarray, cx: float, cy: float, r: float) -> float:
    h, w = inside.shape[:2]
    x0, x1 = max(0, int(cx - r)), min(w, int(cx + r) + 1)
    y0, y1 = max(0, int(cy - r)), min(h, int(cy + r) + 1)
    if x1 <= x0 or y1 <= y0:
        return 0.0
    yy, xx = np.mgrid[y0:y1, x0:x1]
    disk = (xx - cx) ** 2 + (yy - cy) ** 2 <= r * r
    n = int(disk.sum())
    if n == 0:
        return 0.0
    return float(inside[y0:y1, x0:x1][disk].sum()) / n


# -----------------------------
# Masks
# -----------------------------

def metallic_mask(image_bgr: np.ndarray, params: ViaParams) -> np.ndarray:
    """uint8 0/255 mask of pixels inside the via HSV band, lightly cleaned."""
    lo, hi = params.hsv_bounds()
    mask = cv2.inRange(to_hsv(image_bgr), lo, hi)
    mask = cv2.morphologyEx(mask, cv2.MORPH_CLOSE, cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (5, 5)))
    mask = cv2.morphologyEx(mask, cv2.MORPH_OPEN, cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (3, 3)))
    return mask


# -----------------------------
# Detection passes
# -----------------------------

def _hough_pass(gray: np.ndarray, mask: np.ndarray, params: ViaParams) -> List[Tuple[Point2D, float, float, float]]:
    """Returns (center, radius, circularity, confidence) tuples."""
    min_r, max_r = params.radius_range()
    masked = cv2.bitwise_and(gray, gray, mask=mask)
    blurred = cv2.GaussianBlur(masked, (9, 9), 2)
    circles = cv2.HoughCircles(
        blurred,
        cv2.HOUGH_GRADIENT,
        dp=params.hough_dp,
        minDist=params.hough_min_dist,
        param1=params.hough_param1,
        param2=params.hough_param2,
        minRadius=min_r,
        maxRadius=max_r,
    )
    if circles is None:
        return []
    inside = mask > 0
    found = []
    for cx, cy, r in circles.reshape(-1, 3):
        fill = _disk_fill(inside, float(cx), float(cy), float(r))
        if fill < params.hough_min_fill:
            continue
        center = Point2D(float(cx), float(cy))
        sym = radial_symmetry(inside, center, float(r))
        found.append((center, float(r), sym, min(1.0, 0.5 * fill + 0.5 * sym)))
    return found


def _contour_pass(
    mask: np.ndarray,
    params: ViaParams,
    hough: List[Tuple[Point2D, float, float, float]],
) -> List[Tuple[Point2D, float, float, float, List[Point2D]]]:
    min_r, max_r = params.radius_range()
    contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_NONE)
    found = []
    for cnt in contours:
        area = cv2.contourArea(cnt)
        peri = cv2.arcLength(cnt, True)
        if area <= 0 or peri <= 0:
            continue
        circularity = 4.0 * math.pi * area / (peri * peri)
        if circularity < params.circularity_min:
            continue
        m = cv2.moments(cnt)
        if m["m00"] == 0:
            continue
        center = Point2D(m["m10"] / m["m00"], m["m01"] / m["m00"])
        r = math.sqrt(area / math.pi)
        if r < min_r or r > max_r:
            continue
        # already covered by a Hough circle
        if any(center.distance_to(hc) <= hr for hc, hr, _, _ in hough):
            continue
        hull = cv2.convexHull(cnt).reshape(-1, 2)
        boundary = array_to_points(hull) if len(hull) >= 3 else None
        found.append((center, r, circularity, min(1.0, circularity), boundary))
    return found


def dedupe_vias(vias: List[Via], min_distance: float) -> Tuple[List[Via], int]:
    """Keep the higher-confidence via of any pair closer than `min_distance`."""
    order = sorted(range(len(vias)), key=lambda i: -vias[i].confidence)
    kept: List[Via] = []
    for i in order:
        v = vias[i]
        if all(v.center.distance_to(k.center) >= min_distance for k in kept):
            kept.append(v)
    return kept, len(vias) - len(kept)


def detect_vias(
    image_bgr: np.ndarray,
    side: Side,
    params: ViaParams = ViaParams(),
    dpi: float = 0.0,
    on_event: Optional[EventCallback] = None,
) -> ViaDetectionResult:
    """
    Detect through-hole vias on one side.

    Two passes share the metallic mask: Hough circles over the masked
    grayscale image, then contour circularity for pads Hough missed. The
    merged list is de-duplicated within one minimum radius and numbered
    top-to-bottom, left-to-right.
    """
    if dpi > 0 and params.dpi != dpi:
        params = params.with_dpi(dpi)
    min_r, _ = params.radius_range()

    mask = metallic_mask(image_bgr, params)
    gray = to_gray(image_bgr)

    hough = _hough_pass(gray, mask, params)
    contour = _contour_pass(mask, params, hough)

    letter = side.letter
    candidates: List[Via] = []
    for center, r, circ, conf in hough:
        candidates.append(Via(
            id="", center=center, radius=r, side=side,
            circularity=circ, confidence=conf, method=DetectionMethod.HOUGH_CIRCLE,
        ))
    for center, r, circ, conf, boundary in contour:
        candidates.append(Via(
            id="", center=center, radius=r, side=side,
            circularity=circ, confidence=conf, method=DetectionMethod.CONTOUR_FIT,
            pad_boundary=boundary,
        ))

    kept, removed = dedupe_vias(candidates, float(min_r))
    kept.sort(key=lambda v: (round(v.center.y), round(v.center.x)))
    for i, v in enumerate(kept, start=1):
        v.id = f"via-{letter}-{i:03d}"

    emit(
        on_event, log, "via_detection", DECISION, "vias detected",
        side=side.value, hough=len(hough), contour=len(contour), duplicates=removed, total=len(kept),
    )
    return ViaDetectionResult(
        side=side, vias=kept, dpi=params.dpi,
        hough_count=len(hough), contour_count=len(contour), duplicates_removed=removed,
    )


# -----------------------------
# Interactive helpers
# -----------------------------

def detect_via_at_point(image_bgr: np.ndarray, x: float, y: float, dpi: float) -> Optional[Tuple[Point2D, float]]:
    """
    Locate the pad under a click by iterative radial relaxation.

    Rays stop at the first pixel darker than CLICK_GRAY_THRESHOLD; the centre
    moves by the first harmonic of the ray lengths, three times. The radius is
    the 25th-percentile ray. Returns None if nothing pad-like is there.
    """
    gray = to_gray(image_bgr)
    h, w = gray.shape[:2]
    ix, iy = int(x + 0.5), int(y + 0.5)
    if not (0 <= ix < w and 0 <= iy < h):
        return None
    if gray[iy, ix] < CLICK_GRAY_THRESHOLD:
        return None

    inside = gray >= CLICK_GRAY_THRESHOLD
    max_walk = max(0.120 * dpi, 40.0)
    cos_a, sin_a = ray_directions(CLICK_RAYS)
    cx, cy = float(x), float(y)
    dists = np.zeros(CLICK_RAYS)
    for _ in range(CLICK_ITERATIONS):
        dists = walk_rays(inside, cx, cy, CLICK_RAYS, max_walk)
        cx += 2.0 / CLICK_RAYS * float(np.dot(dists, cos_a))
        cy += 2.0 / CLICK_RAYS * float(np.dot(dists, sin_a))

    radius = index_percentile(dists.tolist(), 0.25)
    if dpi > 0 and not (CLICK_MIN_RADIUS_IN * dpi <= radius <= CLICK_MAX_RADIUS_IN * dpi):
        return None
    return Point2D(cx, cy), radius


def create_manual_via(center: Point2D, radius: float, side: Side, via_id: Optional[str] = None) -> Via:
    if via_id is None:
        via_id = f"via-manual-{side.letter}-{int(round(center.x))}-{int(round(center.y))}"
    return Via(
        id=via_id, center=center, radius=radius, side=side,
        circularity=1.0, confidence=1.0, method=DetectionMethod.MANUAL,
    )


def sample_via_colors(image_bgr: np.ndarray, region: RectInt) -> Tuple[float, float, float]:
    """Mean (H, S, V) over `region`, clamped to the image."""
    h, w = image_bgr.shape[:2]
    r = region.clamp_to(w, h)
    if r.area == 0:
        raise InsufficientInput("sample region lies outside the image", {"region": region.to_dict()})
    hsv = to_hsv(np.ascontiguousarray(image_bgr[r.y : r.y + r.height, r.x : r.x + r.width]))
    mh, ms, mv = hsv.reshape(-1, 3).astype(np.float64).mean(axis=0)
    return float(mh), float(ms), float(mv)
