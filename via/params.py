from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Tuple

import numpy as np


@dataclass(frozen=True, slots=True)
class ViaParams:
    """
    Via detection tunables. Radii in pixels are derived from the diameter range
    by `with_dpi`; until then they are 0 and the detector falls back to 3..15 px.

    HSV uses the OpenCV convention (H 0..180, S/V 0..255). The defaults select
    bright, unsaturated pixels (tinned copper).
    """
    hue_min: int = 0
    hue_max: int = 180
    sat_min: int = 0
    sat_max: int = 100
    val_min: int = 180
    val_max: int = 255

    min_diameter_in: float = 0.010
    max_diameter_in: float = 0.050

    circularity_min: float = 0.65

    hough_dp: float = 1.2
    hough_min_dist: int = 20
    hough_param1: int = 80  # Canny high threshold
    hough_param2: int = 30  # accumulator threshold
    hough_min_fill: float = 0.5  # fraction of the Hough disk that must be metallic

    # bright-core variant
    core_threshold: int = 245
    core_erode_size: int = 5
    core_edge_threshold: int = 200
    core_rays: int = 8
    core_min_rays: int = 6
    core_ray_tolerance: float = 0.30
    core_confidence: float = 0.95

    dpi: float = 0.0
    min_radius_px: int = 0
    max_radius_px: int = 0

    def with_dpi(self, dpi: float) -> "ViaParams":
        if dpi <= 0:
            return replace(self, dpi=dpi)
        min_r = max(3, int(self.min_diameter_in * dpi / 2))
        max_r = int(self.max_diameter_in * dpi / 2)
        if max_r < min_r:
            max_r = min_r * 2
        return replace(
            self,
            dpi=dpi,
            min_radius_px=min_r,
            max_radius_px=max_r,
            hough_min_dist=max(10, min_r * 2),
        )

    def with_hsv(self, h_min: int, h_max: int, s_min: int, s_max: int, v_min: int, v_max: int) -> "ViaParams":
        return replace(
            self,
            hue_min=int(h_min), hue_max=int(h_max),
            sat_min=int(s_min), sat_max=int(s_max),
            val_min=int(v_min), val_max=int(v_max),
        )

    def with_size_range(self, min_diameter_in: float, max_diameter_in: float) -> "ViaParams":
        p = replace(self, min_diameter_in=min_diameter_in, max_diameter_in=max_diameter_in)
        return p.with_dpi(p.dpi) if p.dpi > 0 else p

    def radius_range(self) -> Tuple[int, int]:
        if self.min_radius_px > 0 and self.max_radius_px > 0:
            return self.min_radius_px, self.max_radius_px
        return 3, 15

    def hsv_bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        lo = np.array([self.hue_min, self.sat_min, self.val_min], dtype=np.uint8)
        hi = np.array([min(self.hue_max, 180), self.sat_max, self.val_max], dtype=np.uint8)
        return lo, hi


@dataclass(frozen=True, slots=True)
class MatchParams:
    tolerance_in: float = 0.015
    fallback_px: float = 15.0  # used when the DPI is unknown

    def tolerance_px(self, dpi: float) -> float:
        if dpi <= 0:
            return self.fallback_px
        return self.tolerance_in * dpi


def suggest_match_tolerance(dpi: float) -> float:
    """Cross-side match radius: 0.015 inch in pixels (15 px when DPI is unknown)."""
    return MatchParams().tolerance_px(dpi)


def params_from_sample(hsv_mean: Tuple[float, float, float], tolerance: float, base: ViaParams = ViaParams()) -> ViaParams:
    """
    HSV window centred on a sampled via colour. Hue gets a quarter of the
    tolerance since it is on a 0..180 scale and more discriminative.
    """
    h, s, v = hsv_mean
    h_tol = tolerance / 4.0
    return base.with_hsv(
        max(0, int(h - h_tol)), min(180, int(h + h_tol)),
        max(0, int(s - tolerance)), min(255, int(s + tolerance)),
        max(0, int(v - tolerance)), min(255, int(v + tolerance)),
    )
