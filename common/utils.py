from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar

import cv2
import numpy as np

T = TypeVar("T")

# Caller-supplied "is this pixel contact/via material" test: BGR image -> bool mask.
MaterialPredicate = Callable[[np.ndarray], np.ndarray]

# Edge-connector gold in OpenCV HSV (H 0..180).
GOLD_HSV_LO = (15, 80, 120)
GOLD_HSV_HI = (35, 255, 255)


def iso_now_ms() -> str:
    """UTC ISO-8601 timestamp with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(slots=True)
class RunningStats:
    """
    Online mean/std using Welford's algorithm.
    """
    n: int = 0
    mean: float = 0.0
    m2: float = 0.0

    def add(self, x: float) -> None:
        self.n += 1
        d = x - self.mean
        self.mean += d / self.n
        d2 = x - self.mean
        self.m2 += d * d2

    @property
    def variance(self) -> float:
        return self.m2 / (self.n - 1) if self.n > 1 else 0.0

    @property
    def std(self) -> float:
        return self.variance ** 0.5

    @property
    def population_std(self) -> float:
        return (self.m2 / self.n) ** 0.5 if self.n > 0 else 0.0


def index_percentile(values: Sequence[float], fraction: float) -> float:
    """
    Order statistic at index int(len * fraction) of the sorted values
    (no interpolation). Biased low for small populations, which is what the
    radius estimators rely on.
    """
    if len(values) == 0:
        raise ValueError("percentile of empty sequence")
    s = sorted(values)
    i = min(len(s) - 1, max(0, int(len(s) * fraction)))
    return float(s[i])


# -----------------------------
# Colour helpers
# -----------------------------

def to_hsv(image_bgr: np.ndarray) -> np.ndarray:
    """BGR uint8 -> HSV uint8 (H 0..180, S/V 0..255)."""
    if image_bgr.ndim != 3 or image_bgr.shape[2] != 3:
        raise ValueError("expected a 3-channel BGR image")
    return cv2.cvtColor(image_bgr, cv2.COLOR_BGR2HSV)


def to_gray(image_bgr: np.ndarray) -> np.ndarray:
    if image_bgr.ndim == 2:
        return image_bgr
    return cv2.cvtColor(image_bgr, cv2.COLOR_BGR2GRAY)


def hsv_range_predicate(lo: Tuple[int, int, int], hi: Tuple[int, int, int]) -> MaterialPredicate:
    """Build a material predicate accepting pixels whose HSV lies in [lo, hi]."""
    lo_arr = np.array(lo, dtype=np.uint8)
    hi_arr = np.array(hi, dtype=np.uint8)

    def predicate(image_bgr: np.ndarray) -> np.ndarray:
        return cv2.inRange(to_hsv(image_bgr), lo_arr, hi_arr) > 0

    return predicate


def gold_predicate() -> MaterialPredicate:
    return hsv_range_predicate(GOLD_HSV_LO, GOLD_HSV_HI)


# -----------------------------
# Worker pool
# -----------------------------

def default_workers() -> int:
    return max(1, os.cpu_count() or 1)


def chunk_ranges(n: int, chunks: int) -> List[Tuple[int, int]]:
    """Split range(n) into at most `chunks` contiguous [start, stop) pieces."""
    if n <= 0:
        return []
    chunks = max(1, min(chunks, n))
    size = (n + chunks - 1) // chunks
    return [(s, min(n, s + size)) for s in range(0, n, size)]


def parallel_map_chunks(
    fn: Callable[[int, int], List[T]],
    n: int,
    workers: Optional[int] = None,
) -> List[T]:
    """
    Run fn(start, stop) over contiguous chunks of range(n) on a thread pool.

    Each call returns its own list; lists are concatenated in chunk order after
    every future has completed, so the result is independent of scheduling.
    """
    ranges = chunk_ranges(n, workers or default_workers())
    if len(ranges) <= 1:
        return fn(0, n) if n > 0 else []
    with ThreadPoolExecutor(max_workers=len(ranges)) as pool:
        futures = [pool.submit(fn, start, stop) for start, stop in ranges]
        parts = [f.result() for f in futures]
    out: List[T] = []
    for part in parts:
        out.extend(part)
    return out
