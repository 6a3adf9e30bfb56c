from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

import cv2
import numpy as np


@dataclass(frozen=True, slots=True)
class Point2D:
    """Image-pixel coordinate (x right, y down)."""
    x: float
    y: float

    def distance_to(self, other: "Point2D") -> float:
        return math.hypot(self.x - other.x, self.y - other.y)

    def offset(self, dx: float, dy: float) -> "Point2D":
        return Point2D(self.x + dx, self.y + dy)

    @staticmethod
    def midpoint(a: "Point2D", b: "Point2D") -> "Point2D":
        return Point2D((a.x + b.x) / 2.0, (a.y + b.y) / 2.0)


@dataclass(slots=True)
class RectInt:
    """Axis-aligned integer rectangle; (x, y) is the top-left pixel."""
    x: int
    y: int
    width: int
    height: int

    def __post_init__(self) -> None:
        if self.width < 0 or self.height < 0:
            raise ValueError("width/height must be >= 0")
        self.x = int(self.x)
        self.y = int(self.y)
        self.width = int(self.width)
        self.height = int(self.height)

    @property
    def center(self) -> Point2D:
        return Point2D(self.x + self.width / 2.0, self.y + self.height / 2.0)

    @property
    def area(self) -> int:
        return self.width * self.height

    def contains(self, x: float, y: float) -> bool:
        return self.x <= x < self.x + self.width and self.y <= y < self.y + self.height

    def clamp_to(self, width: int, height: int) -> "RectInt":
        """Intersection with the image [0,width)x[0,height); may be empty."""
        x0 = max(0, self.x)
        y0 = max(0, self.y)
        x1 = min(width, self.x + self.width)
        y1 = min(height, self.y + self.height)
        return RectInt(x0, y0, max(0, x1 - x0), max(0, y1 - y0))

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(slots=True)
class AffineTransform:
    """
    2D affine map:
        x' = a*x + b*y + tx
        y' = c*x + d*y + ty
    """
    a: float = 1.0
    b: float = 0.0
    c: float = 0.0
    d: float = 1.0
    tx: float = 0.0
    ty: float = 0.0

    @classmethod
    def identity(cls) -> "AffineTransform":
        return cls()

    @classmethod
    def from_matrix(cls, m: np.ndarray) -> "AffineTransform":
        m = np.asarray(m, dtype=float)
        if m.shape not in ((2, 3), (3, 3)):
            raise ValueError("Expected 2x3 or 3x3 matrix")
        return cls(
            a=float(m[0, 0]), b=float(m[0, 1]), tx=float(m[0, 2]),
            c=float(m[1, 0]), d=float(m[1, 1]), ty=float(m[1, 2]),
        )

    def to_matrix(self) -> np.ndarray:
        """2x3 float64 matrix in the layout cv2.warpAffine expects."""
        return np.array([[self.a, self.b, self.tx], [self.c, self.d, self.ty]], dtype=np.float64)

    def apply(self, p: Point2D) -> Point2D:
        return Point2D(
            self.a * p.x + self.b * p.y + self.tx,
            self.c * p.x + self.d * p.y + self.ty,
        )

    def apply_array(self, pts: np.ndarray) -> np.ndarray:
        """Transform an (N,2) array of points."""
        pts = np.asarray(pts, dtype=float).reshape(-1, 2)
        m = self.to_matrix()
        return pts @ m[:, :2].T + m[:, 2]

    @property
    def determinant(self) -> float:
        return self.a * self.d - self.b * self.c

    def inverse(self) -> Optional["AffineTransform"]:
        """Inverse map, or None when the linear part is singular."""
        det = self.determinant
        if abs(det) < 1e-12:
            return None
        ia = self.d / det
        ib = -self.b / det
        ic = -self.c / det
        id_ = self.a / det
        return AffineTransform(
            a=ia, b=ib, c=ic, d=id_,
            tx=-(ia * self.tx + ib * self.ty),
            ty=-(ic * self.tx + id_ * self.ty),
        )

    def compose(self, other: "AffineTransform") -> "AffineTransform":
        """Return self ∘ other (apply `other` first)."""
        return AffineTransform(
            a=self.a * other.a + self.b * other.c,
            b=self.a * other.b + self.b * other.d,
            c=self.c * other.a + self.d * other.c,
            d=self.c * other.b + self.d * other.d,
            tx=self.a * other.tx + self.b * other.ty + self.tx,
            ty=self.c * other.tx + self.d * other.ty + self.ty,
        )

    @property
    def rotation_deg(self) -> float:
        return math.degrees(math.atan2(self.c, self.a))

    @property
    def scale(self) -> float:
        return math.sqrt(abs(self.determinant))

    def to_dict(self) -> dict:
        return {"a": self.a, "b": self.b, "c": self.c, "d": self.d, "tx": self.tx, "ty": self.ty}


# -----------------------------
# Point-set helpers
# -----------------------------

def points_to_array(points: Iterable[Point2D]) -> np.ndarray:
    arr = np.array([(p.x, p.y) for p in points], dtype=np.float64)
    return arr.reshape(-1, 2)


def array_to_points(arr: np.ndarray) -> List[Point2D]:
    return [Point2D(float(x), float(y)) for x, y in np.asarray(arr, dtype=float).reshape(-1, 2)]


def centroid(points: Sequence[Point2D]) -> Point2D:
    if not points:
        raise ValueError("centroid of empty point set")
    arr = points_to_array(points)
    cx, cy = arr.mean(axis=0)
    return Point2D(float(cx), float(cy))


def bounding_box(points: Sequence[Point2D]) -> RectInt:
    """Smallest integer rect covering every point."""
    if not points:
        return RectInt(0, 0, 0, 0)
    arr = points_to_array(points)
    x0, y0 = np.floor(arr.min(axis=0)).astype(int)
    x1, y1 = np.ceil(arr.max(axis=0)).astype(int)
    return RectInt(int(x0), int(y0), int(x1 - x0), int(y1 - y0))


def convex_hull(points: Sequence[Point2D]) -> List[Point2D]:
    if len(points) < 3:
        return list(points)
    hull = cv2.convexHull(points_to_array(points).astype(np.float32))
    return array_to_points(hull.reshape(-1, 2))


def point_in_polygon(x: float, y: float, polygon: Sequence[Point2D]) -> bool:
    """Even-odd ray casting test."""
    n = len(polygon)
    inside = False
    j = n - 1
    for i in range(n):
        xi, yi = polygon[i].x, polygon[i].y
        xj, yj = polygon[j].x, polygon[j].y
        if (yi > y) != (yj > y) and x < (xj - xi) * (y - yi) / (yj - yi) + xi:
            inside = not inside
        j = i
    return inside


def circle_points(center: Point2D, radius: float, n: int = 32) -> List[Point2D]:
    angles = np.arange(n) * (2.0 * math.pi / n)
    return [
        Point2D(center.x + radius * math.cos(t), center.y + radius * math.sin(t))
        for t in angles
    ]


def square_points(center: Point2D, half_side: float) -> List[Point2D]:
    r = half_side
    return [
        center.offset(-r, -r),
        center.offset(r, -r),
        center.offset(r, r),
        center.offset(-r, r),
    ]
