from __future__ import annotations

import math
from typing import List, Optional

import cv2
import numpy as np

from common.events import DECISION, REJECTED, EventCallback, emit
from common.geometry import Point2D
from common.logging_setup import get_logger
from common.types import DetectionMethod, Side, Via
from common.utils import to_gray
from via.detector import ViaDetectionResult, walk_rays
from via.params import ViaParams

log = get_logger("via.bright_core")


def bright_core_mask(gray: np.ndarray, threshold: int, erode_size: int) -> np.ndarray:
    """
    Pixels whose whole erode_size x erode_size neighbourhood is >= threshold.
    Pixels closer than half a kernel to the border are never cores.
    """
    bright = (gray >= threshold).astype(np.uint8)
    kernel = np.ones((erode_size, erode_size), dtype=np.uint8)
    return cv2.erode(bright, kernel, borderType=cv2.BORDER_CONSTANT, borderValue=0)


def detect_bright_cores(
    image_bgr: np.ndarray,
    side: Side,
    params: ViaParams = ViaParams(),
    dpi: float = 0.0,
    on_event: Optional[EventCallback] = None,
) -> ViaDetectionResult:
    """
    Find via cores that sit inside larger bright pads or traces.

    The erosion breaks thin bright connections so each drilled core becomes its
    own component. A component survives when `core_min_rays` of its 8 rays hit a
    brightness edge and as many lie within `core_ray_tolerance` of the median
    ray length; that median becomes the radius.
    """
    if dpi > 0 and params.dpi != dpi:
        params = params.with_dpi(dpi)
    min_r, max_r = params.radius_range()
    half = params.core_erode_size // 2

    gray = to_gray(image_bgr)
    core = bright_core_mask(gray, params.core_threshold, params.core_erode_size)
    n_labels, _, stats, centroids = cv2.connectedComponentsWithStats(core, connectivity=4)

    edge_inside = gray >= params.core_edge_threshold
    max_walk = float(max_r * 2)
    vias: List[Via] = []
    rejected = 0
    for label in range(1, n_labels):
        count = int(stats[label, cv2.CC_STAT_AREA])
        radius = math.sqrt(count / math.pi) + half
        if int(radius) < min_r or int(radius) > max_r:
            continue
        cx, cy = float(centroids[label][0]), float(centroids[label][1])

        dists = walk_rays(edge_inside, cx, cy, params.core_rays, max_walk, off_image=0.0, no_hit=0.0)
        valid = dists[dists > 0]
        if valid.size < params.core_min_rays:
            rejected += 1
            continue
        median = float(np.sort(valid)[valid.size // 2])
        consistent = int(np.sum(np.abs(valid - median) / median <= params.core_ray_tolerance))
        if consistent < params.core_min_rays:
            rejected += 1
            continue
        if int(median) < min_r or int(median) > max_r:
            continue

        vias.append(Via(
            id=f"bc-{side.letter}-{len(vias) + 1:03d}",
            center=Point2D(cx, cy),
            radius=median,
            side=side,
            circularity=consistent / params.core_rays,
            confidence=params.core_confidence,
            method=DetectionMethod.CONTOUR_FIT,
        ))

    if rejected:
        emit(on_event, log, "bright_core", REJECTED, "non-circular bright cores rejected", side=side.value, count=rejected)
    emit(on_event, log, "bright_core", DECISION, "bright cores detected", side=side.value, total=len(vias))
    return ViaDetectionResult(side=side, vias=vias, dpi=params.dpi, contour_count=len(vias))
