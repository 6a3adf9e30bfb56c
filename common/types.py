from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from common.geometry import Point2D, RectInt, bounding_box, point_in_polygon


class Side(str, Enum):
    FRONT = "front"
    BACK = "back"

    @property
    def letter(self) -> str:
        return "F" if self is Side.FRONT else "B"


class DetectionPass(str, Enum):
    PRIMARY = "primary"
    BRUTE_FORCE = "brute_force"
    RESCUE = "rescue"


class DetectionMethod(str, Enum):
    HOUGH_CIRCLE = "hough_circle"
    CONTOUR_FIT = "contour_fit"
    MANUAL = "manual"


def _points_to_list(points: Optional[List[Point2D]]) -> Optional[List[List[float]]]:
    if points is None:
        return None
    return [[p.x, p.y] for p in points]


def _circle_bounds(center: Point2D, radius: float) -> RectInt:
    r = int(radius + 0.5)
    return RectInt(int(center.x) - r, int(center.y) - r, 2 * r, 2 * r)


# -----------------------------
# Contacts
# -----------------------------

@dataclass(slots=True)
class Contact:
    """
    One edge-connector contact on a single side.

    Attributes:
        bounds: pixel rectangle of the contact.
        center: centre in image pixels.
        pass_: which detection pass produced it.
        confidence: [0..1] photometric score.
    """
    bounds: RectInt
    center: Point2D
    pass_: DetectionPass = DetectionPass.PRIMARY
    confidence: float = 1.0

    def __post_init__(self) -> None:
        if not isinstance(self.bounds, RectInt):
            raise TypeError("bounds must be a RectInt")
        self.confidence = float(min(1.0, max(0.0, self.confidence)))

    @classmethod
    def from_rect(cls, rect: RectInt, pass_: DetectionPass = DetectionPass.PRIMARY, confidence: float = 1.0) -> "Contact":
        return cls(bounds=rect, center=rect.center, pass_=pass_, confidence=confidence)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bounds": self.bounds.to_dict(),
            "center": [self.center.x, self.center.y],
            "pass": self.pass_.value,
            "confidence": self.confidence,
        }


@dataclass(slots=True)
class ContactSpec:
    """Physical layout of one connector edge; zero means 'unknown'."""
    count: int
    pitch_in: float = 0.0
    width_in: float = 0.0
    height_in: float = 0.0
    margin_in: float = 0.0

    def __post_init__(self) -> None:
        if self.count < 0:
            raise ValueError("count must be >= 0")
        for name in ("pitch_in", "width_in", "height_in", "margin_in"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")


# -----------------------------
# Vias
# -----------------------------

@dataclass(slots=True)
class Via:
    """
    A plated through-hole observed on one side of the board.

    Without `pad_boundary` the via is treated as a perfect circle for
    hit-testing and bounds.
    """
    id: str
    center: Point2D
    radius: float
    side: Side
    circularity: float = 1.0
    confidence: float = 1.0
    method: DetectionMethod = DetectionMethod.HOUGH_CIRCLE
    pad_boundary: Optional[List[Point2D]] = None
    matched_via_id: Optional[str] = None
    both_sides_confirmed: bool = False

    def __post_init__(self) -> None:
        if self.radius < 0:
            raise ValueError("radius must be >= 0")
        if self.pad_boundary is not None:
            self.pad_boundary = list(self.pad_boundary)
            if len(self.pad_boundary) < 3:
                raise ValueError("pad_boundary needs at least 3 points")
        self.confidence = float(min(1.0, max(0.0, self.confidence)))

    def bounds(self) -> RectInt:
        if self.pad_boundary:
            return bounding_box(self.pad_boundary)
        return _circle_bounds(self.center, self.radius)

    def hit_test(self, x: float, y: float) -> bool:
        if self.pad_boundary:
            return point_in_polygon(x, y, self.pad_boundary)
        dx = x - self.center.x
        dy = y - self.center.y
        return dx * dx + dy * dy <= self.radius * self.radius

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "center": [self.center.x, self.center.y],
            "radius": self.radius,
            "side": self.side.value,
            "circularity": self.circularity,
            "confidence": self.confidence,
            "method": self.method.value,
            "pad_boundary": _points_to_list(self.pad_boundary),
            "matched_via_id": self.matched_via_id,
            "both_sides_confirmed": self.both_sides_confirmed,
        }


@dataclass(slots=True)
class ConfirmedVia:
    """A via seen on both sides, fused into one geometry."""
    id: str
    front_via_id: str
    back_via_id: str
    center: Point2D
    radius: float
    intersection_boundary: List[Point2D] = field(default_factory=list)
    confidence: float = 1.0

    def __post_init__(self) -> None:
        self.confidence = float(min(1.0, max(0.0, self.confidence)))

    def bounds(self) -> RectInt:
        if len(self.intersection_boundary) >= 3:
            return bounding_box(self.intersection_boundary)
        return _circle_bounds(self.center, self.radius)

    def hit_test(self, x: float, y: float) -> bool:
        if len(self.intersection_boundary) >= 3:
            return point_in_polygon(x, y, self.intersection_boundary)
        dx = x - self.center.x
        dy = y - self.center.y
        return dx * dx + dy * dy <= self.radius * self.radius

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "front_via_id": self.front_via_id,
            "back_via_id": self.back_via_id,
            "center": [self.center.x, self.center.y],
            "radius": self.radius,
            "intersection_boundary": _points_to_list(self.intersection_boundary),
            "confidence": self.confidence,
        }


@dataclass(slots=True)
class MatchResult:
    """
    Outcome of pairing front/back vias.

    `front_vias` / `back_vias` are copies of the inputs carrying the symmetric
    cross-references; `confirmed_by_via` maps every matched via id to the id of
    its ConfirmedVia.
    """
    matched: int = 0
    unmatched: int = 0
    avg_error: float = 0.0
    max_error: float = 0.0
    confirmed: List[ConfirmedVia] = field(default_factory=list)
    front_vias: List[Via] = field(default_factory=list)
    back_vias: List[Via] = field(default_factory=list)
    confirmed_by_via: Dict[str, str] = field(default_factory=dict)

    def pairs(self) -> List[Tuple[str, str]]:
        return [(cv.front_via_id, cv.back_via_id) for cv in self.confirmed]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matched": self.matched,
            "unmatched": self.unmatched,
            "avg_error": self.avg_error,
            "max_error": self.max_error,
            "confirmed": [cv.to_dict() for cv in self.confirmed],
        }


# -----------------------------
# Pins
# -----------------------------

@dataclass(slots=True)
class ExpectedPin:
    number: int
    position: Point2D
    row: int

    def __post_init__(self) -> None:
        if self.number < 1:
            raise ValueError("pin number must be >= 1")
        if self.row not in (1, 2):
            raise ValueError("row must be 1 or 2")


@dataclass(slots=True)
class PinRecord:
    """
    Numbered pin pad of a placed component.

    Attributes:
        component_id: owning component, e.g. "U3".
        pin_number: 1..N in serpentine DIP order.
        center: pad centre in solder-side pixels.
        radius: consensus pad radius shared by every pin of the component.
        boundary: 4-point square for pin 1, 32-point circle otherwise.
        confidence: [0..1].
    """
    component_id: str
    pin_number: int
    center: Point2D
    radius: float
    boundary: List[Point2D]
    confidence: float = 0.9

    def to_dict(self) -> Dict[str, Any]:
        return {
            "component_id": self.component_id,
            "pin_number": self.pin_number,
            "center": [self.center.x, self.center.y],
            "radius": self.radius,
            "boundary": _points_to_list(self.boundary),
            "confidence": self.confidence,
        }
