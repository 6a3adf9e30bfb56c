"""
Feature-statistics classifier for via candidates.

Labelled samples (positive = real via, negative = look-alike) are collected by
the caller and handed in through `TracerContext.classifier`; nothing here is
global or persisted. An untrained classifier scores everything 0.5.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence

import cv2
import numpy as np

from common.geometry import Point2D
from common.types import Side, Via
from common.utils import to_hsv

# Quadrant brightness std is divided by this to map symmetry into 0..1.
SYMMETRY_NORMALIZER = 50.0
# Edge-vs-corner brightness difference is divided by this for rectangularity.
RECTANGULARITY_NORMALIZER = 100.0
SOBEL_EDGE_THRESHOLD = 50.0
REGION_MARGIN = 0.2

# Per-feature weight and std floor used in the distance score.
_FEATURE_WEIGHTS = {
    "hue_mean": (1.5, 1.0),
    "sat_mean": (1.0, 1.0),
    "val_mean": (1.0, 1.0),
    "edge_density": (1.0, 0.01),
    "rectangularity": (2.0, 0.1),
    "symmetry": (1.0, 0.1),
    "aspect_ratio": (1.0, 0.1),
}


@dataclass(slots=True)
class TrainingSample:
    id: str
    center: Point2D
    radius: float
    side: Side
    positive: bool
    source: str = "manual"


@dataclass(slots=True)
class TrainingSet:
    samples: List[TrainingSample] = field(default_factory=list)

    def _add(self, center: Point2D, radius: float, side: Side, positive: bool, source: str) -> TrainingSample:
        prefix = "pos" if positive else "neg"
        sample = TrainingSample(f"{prefix}-{len(self.samples) + 1:04d}", center, radius, side, positive, source)
        self.samples.append(sample)
        return sample

    def add_positive(self, center: Point2D, radius: float, side: Side, source: str = "manual") -> TrainingSample:
        return self._add(center, radius, side, True, source)

    def add_negative(self, center: Point2D, radius: float, side: Side, source: str = "manual") -> TrainingSample:
        return self._add(center, radius, side, False, source)

    def remove(self, sample_id: str) -> bool:
        n = len(self.samples)
        self.samples = [s for s in self.samples if s.id != sample_id]
        return len(self.samples) != n

    def find_near(self, center: Point2D, tolerance: float, side: Side) -> List[TrainingSample]:
        return [s for s in self.samples if s.side is side and s.center.distance_to(center) <= tolerance]

    def positives(self, side: Optional[Side] = None) -> List[TrainingSample]:
        return [s for s in self.samples if s.positive and (side is None or s.side is side)]

    def negatives(self, side: Optional[Side] = None) -> List[TrainingSample]:
        return [s for s in self.samples if not s.positive and (side is None or s.side is side)]

    @classmethod
    def from_records(cls, records: Iterable[Dict[str, Any]]) -> "TrainingSet":
        """Build from dicts like {"x":.., "y":.., "radius":.., "side": "front", "positive": true}."""
        ts = cls()
        for r in records:
            ts._add(
                Point2D(float(r["x"]), float(r["y"])),
                float(r["radius"]),
                Side(r.get("side", "front")),
                bool(r.get("positive", True)),
                str(r.get("source", "config")),
            )
        return ts


@dataclass(slots=True)
class FeatureVector:
    hue_mean: float = 0.0
    hue_std: float = 0.0
    sat_mean: float = 0.0
    sat_std: float = 0.0
    val_mean: float = 0.0
    val_std: float = 0.0
    edge_density: float = 0.0
    aspect_ratio: float = 0.0
    rectangularity: float = 0.0
    symmetry: float = 0.0


def _rectangularity(gray: np.ndarray) -> float:
    h, w = gray.shape
    if w < 4 or h < 4:
        return 0.5
    cx, cy = w // 2, h // 2
    dist = min(w, h) * 0.35
    corner = dist * 0.707
    edge = [gray[cy + int(dy * dist), cx + int(dx * dist)] for dx, dy in ((0, -1), (1, 0), (0, 1), (-1, 0))]
    corners = [gray[cy + int(dy * corner), cx + int(dx * corner)] for dx, dy in ((1, -1), (1, 1), (-1, 1), (-1, -1))]
    return min(abs(float(np.mean(edge)) - float(np.mean(corners))) / RECTANGULARITY_NORMALIZER, 1.0)


def _symmetry(gray: np.ndarray) -> float:
    h, w = gray.shape
    if w < 4 or h < 4:
        return 0.5
    hh, hw = h // 2, w // 2
    quads = np.array([
        gray[:hh, :hw].mean(), gray[:hh, hw:].mean(),
        gray[hh:, :hw].mean(), gray[hh:, hw:].mean(),
    ])
    return max(0.0, 1.0 - float(quads.std()) / SYMMETRY_NORMALIZER)


def extract_features(image_bgr: np.ndarray, center: Point2D, radius: float) -> FeatureVector:
    """Colour, edge and shape statistics of the square around a candidate."""
    ih, iw = image_bgr.shape[:2]
    margin = radius * REGION_MARGIN
    x1 = max(0, int(center.x - radius - margin))
    y1 = max(0, int(center.y - radius - margin))
    x2 = min(iw - 1, int(center.x + radius + margin))
    y2 = min(ih - 1, int(center.y + radius + margin))
    if x2 < x1 or y2 < y1:
        return FeatureVector()

    region = np.ascontiguousarray(image_bgr[y1 : y2 + 1, x1 : x2 + 1])
    hsv = to_hsv(region).reshape(-1, 3).astype(np.float64)
    gray = region.astype(np.float64) @ np.array([0.114, 0.587, 0.299])

    gx = cv2.Sobel(gray, cv2.CV_64F, 1, 0, ksize=3)
    gy = cv2.Sobel(gray, cv2.CV_64F, 0, 1, ksize=3)
    mag = np.hypot(gx, gy)[1:-1, 1:-1]
    edges = int(np.count_nonzero(mag > SOBEL_EDGE_THRESHOLD))

    h, w = gray.shape
    aspect = w / h
    if aspect > 1:
        aspect = 1.0 / aspect

    return FeatureVector(
        hue_mean=float(hsv[:, 0].mean()), hue_std=float(hsv[:, 0].std()),
        sat_mean=float(hsv[:, 1].mean()), sat_std=float(hsv[:, 1].std()),
        val_mean=float(hsv[:, 2].mean()), val_std=float(hsv[:, 2].std()),
        edge_density=edges / float(w * h),
        aspect_ratio=aspect,
        rectangularity=_rectangularity(gray),
        symmetry=_symmetry(gray),
    )


def _stats(features: Sequence[FeatureVector]) -> tuple:
    keys = list(_FEATURE_WEIGHTS)
    arr = np.array([[getattr(f, k) for k in keys] for f in features], dtype=np.float64)
    return dict(zip(keys, arr.mean(axis=0))), dict(zip(keys, arr.std(axis=0)))


def _distance(fv: FeatureVector, mean: Dict[str, float], std: Dict[str, float]) -> float:
    score = 0.0
    for k, (weight, floor) in _FEATURE_WEIGHTS.items():
        s = max(std[k] + floor, 0.001)
        d = (getattr(fv, k) - mean[k]) / s
        score += d * d * weight
    return math.sqrt(score)


class ViaClassifier:
    """
    Scores how via-like a location is relative to labelled samples.

    Usage:
        clf = ViaClassifier(training_set)
        clf.train(front_bgr, Side.FRONT)
        p = clf.score(front_bgr, Point2D(120, 80), 9.0)
    """

    def __init__(self, training: TrainingSet):
        self.training = training
        self._pos: Optional[tuple] = None
        self._neg: Optional[tuple] = None

    @property
    def trained(self) -> bool:
        return self._pos is not None or self._neg is not None

    def train(self, image_bgr: np.ndarray, side: Side) -> None:
        pos = [extract_features(image_bgr, s.center, s.radius) for s in self.training.positives(side)]
        neg = [extract_features(image_bgr, s.center, s.radius) for s in self.training.negatives(side)]
        self._pos = _stats(pos) if pos else None
        self._neg = _stats(neg) if neg else None

    def score(self, image_bgr: np.ndarray, center: Point2D, radius: float) -> float:
        """
        Probability-like score in [0, 1]; 0.5 when untrained.

        With both labels the inverse distances are weighed against each
        other. With one label only, the score is the similarity 1 / (1 + d) to
        the positives, or one minus it for the negatives.
        """
        if not self.trained:
            return 0.5
        fv = extract_features(image_bgr, center, radius)
        if self._neg is None:
            return 1.0 / (1.0 + _distance(fv, *self._pos))
        if self._pos is None:
            return 1.0 - 1.0 / (1.0 + _distance(fv, *self._neg))
        pos_d = _distance(fv, *self._pos)
        neg_d = _distance(fv, *self._neg)
        if pos_d == 0.0 and neg_d == 0.0:
            return 0.5
        pos_w = 1.0 / (pos_d + 0.001)
        neg_w = 1.0 / (neg_d + 0.001)
        return pos_w / (pos_w + neg_w)

    def score_with_cross_side(self, image_bgr: np.ndarray, via: Via, both_sides_weight: float = 0.4) -> float:
        base = self.score(image_bgr, via.center, via.radius)
        if via.both_sides_confirmed:
            return base * (1.0 - both_sides_weight) + both_sides_weight
        # mild penalty: a miss on the other side may be an alignment problem
        return base * (1.0 - both_sides_weight * 0.3)


def filter_with_classifier(
    vias: Sequence[Via],
    classifier: Optional[ViaClassifier],
    image_bgr: np.ndarray,
    threshold: float,
) -> List[Via]:
    """Drop vias scoring below `threshold`; survivors average confidence with the score."""
    if classifier is None or not classifier.trained:
        return list(vias)
    out = []
    for v in vias:
        s = classifier.score(image_bgr, v.center, v.radius)
        if s >= threshold:
            out.append(replace(v, confidence=(v.confidence + s) / 2.0))
    return out
