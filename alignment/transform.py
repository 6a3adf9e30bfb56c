from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from common.errors import InsufficientPoints, RansacFailure
from common.events import DECISION, FAILURE, FALLBACK, EventCallback, emit
from common.geometry import AffineTransform, Point2D, points_to_array
from common.logging_setup import get_logger

log = get_logger("alignment.transform")

INSUFFICIENT_POINTS = "insufficient_points"
RANSAC_FAILURE = "ransac_failure"

AFFINE_SAMPLE = 3
RIGID_SAMPLE = 2
MIN_RIGID_VECTOR = 1e-3


@dataclass(slots=True)
class TransformFit:
    """
    Result of a robust transform estimate.

    `ok=False` carries `failure` (INSUFFICIENT_POINTS or RANSAC_FAILURE) and no
    transform. `inliers` are indices into the input sequences, ascending.
    """
    ok: bool
    transform: Optional[AffineTransform] = None
    inliers: List[int] = field(default_factory=list)
    failure: Optional[str] = None
    mean_error: float = float("inf")
    total: int = 0
    sample_size: int = AFFINE_SAMPLE

    def raise_for_failure(self) -> AffineTransform:
        """Return the transform or raise the matching TracerError."""
        if self.ok and self.transform is not None:
            return self.transform
        if self.failure == INSUFFICIENT_POINTS:
            raise InsufficientPoints(self.sample_size, self.total)
        raise RansacFailure("RANSAC found too few inliers", {"inliers": len(self.inliers), "total": self.total})

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "transform": self.transform.to_dict() if self.transform else None,
            "inliers": len(self.inliers),
            "total": self.total,
            "failure": self.failure,
            "mean_error": self.mean_error,
        }


def _as_arrays(src, dst) -> Tuple[np.ndarray, np.ndarray]:
    s = src if isinstance(src, np.ndarray) else points_to_array(src)
    d = dst if isinstance(dst, np.ndarray) else points_to_array(dst)
    s = np.asarray(s, dtype=np.float64).reshape(-1, 2)
    d = np.asarray(d, dtype=np.float64).reshape(-1, 2)
    if len(s) != len(d):
        raise ValueError(f"point count mismatch: {len(s)} vs {len(d)}")
    return s, d


def _design(src: np.ndarray, dst: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Rows [x y 1 0 0 0] / [0 0 0 x y 1] against b = [x', y', ...]."""
    n = len(src)
    A = np.zeros((2 * n, 6))
    A[0::2, 0:2] = src
    A[0::2, 2] = 1.0
    A[1::2, 3:5] = src
    A[1::2, 5] = 1.0
    b = dst.reshape(-1)
    return A, b


def _params_to_transform(p: np.ndarray) -> AffineTransform:
    return AffineTransform(a=p[0], b=p[1], tx=p[2], c=p[3], d=p[4], ty=p[5])


def affine_from_three(src: np.ndarray, dst: np.ndarray) -> Optional[AffineTransform]:
    """Exact affine through 3 correspondences; None if they are collinear."""
    A, b = _design(src, dst)
    try:
        p = np.linalg.solve(A, b)
    except np.linalg.LinAlgError:
        return None
    if not np.all(np.isfinite(p)):
        return None
    return _params_to_transform(p)


def affine_least_squares(src: np.ndarray, dst: np.ndarray) -> Optional[AffineTransform]:
    """QR least squares over all correspondences; None if rank-deficient."""
    if len(src) < AFFINE_SAMPLE:
        return None
    A, b = _design(src, dst)
    Q, R = np.linalg.qr(A)
    diag = np.abs(np.diag(R))
    if diag.min() <= 1e-10 * max(1.0, diag.max()):
        return None
    p = np.linalg.solve(R, Q.T @ b)
    return _params_to_transform(p)


def rigid_from_two(s0: np.ndarray, s1: np.ndarray, d0: np.ndarray, d1: np.ndarray) -> Optional[AffineTransform]:
    sv = s1 - s0
    dv = d1 - d0
    if math.hypot(*sv) < MIN_RIGID_VECTOR or math.hypot(*dv) < MIN_RIGID_VECTOR:
        return None
    theta = math.atan2(dv[1], dv[0]) - math.atan2(sv[1], sv[0])
    c, s = math.cos(theta), math.sin(theta)
    tx = d0[0] - (c * s0[0] - s * s0[1])
    ty = d0[1] - (s * s0[0] + c * s0[1])
    return AffineTransform(a=c, b=-s, c=s, d=c, tx=tx, ty=ty)


def rigid_least_squares(src: np.ndarray, dst: np.ndarray) -> AffineTransform:
    """
    Closed-form 2D Procrustes: centre both sets, theta = atan2(sum cross, sum dot),
    translation from the centroids.
    """
    sc = src.mean(axis=0)
    dc = dst.mean(axis=0)
    s = src - sc
    d = dst - dc
    dot = float(np.sum(s[:, 0] * d[:, 0] + s[:, 1] * d[:, 1]))
    cross = float(np.sum(s[:, 0] * d[:, 1] - s[:, 1] * d[:, 0]))
    theta = math.atan2(cross, dot)
    c, sn = math.cos(theta), math.sin(theta)
    tx = dc[0] - (c * sc[0] - sn * sc[1])
    ty = dc[1] - (sn * sc[0] + c * sc[1])
    return AffineTransform(a=c, b=-sn, c=sn, d=c, tx=tx, ty=ty)


def _residuals(t: AffineTransform, src: np.ndarray, dst: np.ndarray) -> np.ndarray:
    return np.linalg.norm(t.apply_array(src) - dst, axis=1)


def _ransac(
    src: np.ndarray,
    dst: np.ndarray,
    sample_size: int,
    hypothesis,
    iterations: int,
    threshold: float,
    rng: np.random.Generator,
) -> Tuple[Optional[AffineTransform], np.ndarray]:
    n = len(src)
    best_t: Optional[AffineTransform] = None
    best_mask = np.zeros(n, dtype=bool)
    best_count = 0
    for _ in range(iterations):
        idx = rng.choice(n, size=sample_size, replace=False)
        t = hypothesis(src[idx], dst[idx])
        if t is None:
            continue
        mask = _residuals(t, src, dst) < threshold
        count = int(mask.sum())
        if count > best_count:
            best_t, best_mask, best_count = t, mask, count
    return best_t, best_mask


def estimate_affine_ransac(
    src: Sequence[Point2D] | np.ndarray,
    dst: Sequence[Point2D] | np.ndarray,
    iterations: int = 2000,
    threshold: float = 3.0,
    *,
    rng: Optional[np.random.Generator] = None,
    on_event: Optional[EventCallback] = None,
) -> TransformFit:
    """
    Robust affine src -> dst.

    Args:
        src, dst: equal-length correspondences (Point2D sequences or (N,2) arrays).
        iterations: RANSAC hypotheses to draw.
        threshold: inlier distance in pixels (strict <).
        rng: numpy Generator; pass a seeded one for reproducible fits.

    Returns:
        TransformFit; the final transform is a QR least-squares refit over all
        inliers, or the best 3-point hypothesis if that refit is singular.
    """
    s, d = _as_arrays(src, dst)
    n = len(s)
    if n < AFFINE_SAMPLE:
        emit(on_event, log, "transform", FAILURE, "too few points for affine", required=AFFINE_SAMPLE, got=n)
        return TransformFit(ok=False, failure=INSUFFICIENT_POINTS, total=n)

    rng = rng or np.random.default_rng()
    best_t, mask = _ransac(s, d, AFFINE_SAMPLE, affine_from_three, iterations, threshold, rng)
    inliers = np.flatnonzero(mask)
    if best_t is None or len(inliers) < AFFINE_SAMPLE:
        emit(on_event, log, "transform", FAILURE, "affine RANSAC failed", inliers=int(len(inliers)), total=n)
        return TransformFit(ok=False, failure=RANSAC_FAILURE, inliers=inliers.tolist(), total=n)

    final = affine_least_squares(s[inliers], d[inliers])
    if final is None:
        emit(on_event, log, "transform", FALLBACK, "singular refit, keeping best sample", inliers=int(len(inliers)))
        final = best_t
    err = float(_residuals(final, s[inliers], d[inliers]).mean())
    emit(on_event, log, "transform", DECISION, "affine fitted", inliers=int(len(inliers)), total=n, mean_error=err)
    return TransformFit(ok=True, transform=final, inliers=inliers.tolist(), mean_error=err, total=n)


def estimate_rigid_ransac(
    src: Sequence[Point2D] | np.ndarray,
    dst: Sequence[Point2D] | np.ndarray,
    iterations: int = 2000,
    threshold: float = 3.0,
    *,
    rng: Optional[np.random.Generator] = None,
    on_event: Optional[EventCallback] = None,
) -> TransformFit:
    """Rotation + translation only; useful when points are nearly collinear."""
    s, d = _as_arrays(src, dst)
    n = len(s)
    if n < RIGID_SAMPLE:
        emit(on_event, log, "transform", FAILURE, "too few points for rigid", required=RIGID_SAMPLE, got=n)
        return TransformFit(ok=False, failure=INSUFFICIENT_POINTS, total=n, sample_size=RIGID_SAMPLE)

    rng = rng or np.random.default_rng()
    best_t, mask = _ransac(
        s, d, RIGID_SAMPLE,
        lambda ss, dd: rigid_from_two(ss[0], ss[1], dd[0], dd[1]),
        iterations, threshold, rng,
    )
    inliers = np.flatnonzero(mask)
    if best_t is None or len(inliers) < RIGID_SAMPLE:
        emit(on_event, log, "transform", FAILURE, "rigid RANSAC failed", inliers=int(len(inliers)), total=n)
        return TransformFit(ok=False, failure=RANSAC_FAILURE, inliers=inliers.tolist(), total=n, sample_size=RIGID_SAMPLE)

    final = rigid_least_squares(s[inliers], d[inliers])
    err = float(_residuals(final, s[inliers], d[inliers]).mean())
    emit(on_event, log, "transform", DECISION, "rigid fitted", inliers=int(len(inliers)), total=n, mean_error=err)
    return TransformFit(ok=True, transform=final, inliers=inliers.tolist(), mean_error=err, total=n, sample_size=RIGID_SAMPLE)


def alignment_error(
    src: Sequence[Point2D] | np.ndarray,
    dst: Sequence[Point2D] | np.ndarray,
    transform: AffineTransform,
) -> float:
    """Mean distance between transform(src) and dst; inf for mismatched or empty input."""
    s = src if isinstance(src, np.ndarray) else points_to_array(src)
    d = dst if isinstance(dst, np.ndarray) else points_to_array(dst)
    s = np.asarray(s, dtype=np.float64).reshape(-1, 2)
    d = np.asarray(d, dtype=np.float64).reshape(-1, 2)
    if len(s) != len(d) or len(s) == 0:
        return float("inf")
    return float(_residuals(transform, s, d).mean())


# -----------------------------
# Image helpers
# -----------------------------

def warp_affine(image: np.ndarray, transform: AffineTransform, size: Tuple[int, int]) -> np.ndarray:
    """Resample `image` into a (width, height) canvas; outside pixels are black."""
    return cv2.warpAffine(
        image, transform.to_matrix(), size,
        flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_CONSTANT, borderValue=0,
    )


def rotate_image(image: np.ndarray, degrees: int) -> np.ndarray:
    """Clockwise rotation by 90/180/270; anything else returns a copy."""
    codes = {90: cv2.ROTATE_90_CLOCKWISE, 180: cv2.ROTATE_180, 270: cv2.ROTATE_90_COUNTERCLOCKWISE}
    code = codes.get(degrees % 360)
    if code is None:
        return image.copy()
    return cv2.rotate(image, code)


def flip_horizontal(image: np.ndarray) -> np.ndarray:
    return cv2.flip(image, 1)
