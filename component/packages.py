from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from common.geometry import Point2D, RectInt

MM_PER_INCH = 25.4


@dataclass(frozen=True, slots=True)
class PackageSpec:
    """Physical body and pin-grid dimensions of a through-hole package (mm)."""
    name: str
    width_mm: float
    height_mm: float
    pin_count: int
    pin_pitch_mm: float = 2.54
    row_spacing_mm: float = 7.62

    def pitch_px(self, dpi: float) -> float:
        return self.pin_pitch_mm / MM_PER_INCH * dpi

    def row_spacing_px(self, dpi: float) -> float:
        return self.row_spacing_mm / MM_PER_INCH * dpi


def _dip(pins: int, height_mm: float, width_mm: float = 6.35, row_mm: float = 7.62) -> PackageSpec:
    return PackageSpec(f"DIP-{pins}", width_mm, height_mm, pins, 2.54, row_mm)


STANDARD_PACKAGES: Dict[str, PackageSpec] = {
    p.name: p
    for p in (
        _dip(8, 9.65),
        _dip(14, 19.05),
        _dip(16, 20.32),
        _dip(18, 22.86),
        _dip(20, 25.40),
        _dip(24, 31.75),
        _dip(28, 35.56),
        _dip(40, 52.58, width_mm=15.24, row_mm=15.24),
    )
}


def parse_dip_pin_count(package: str) -> Optional[int]:
    """'DIP-16' -> 16. None for non-DIP names, odd counts, or fewer than 4 pins."""
    name = package.strip().upper()
    if not name.startswith("DIP-"):
        return None
    try:
        n = int(name[4:])
    except ValueError:
        return None
    if n < 4 or n % 2:
        return None
    return n


def lookup_package(catalogue: Mapping[str, PackageSpec], name: str) -> Optional[PackageSpec]:
    return catalogue.get(name.strip().upper())


@dataclass(slots=True)
class ComponentPlacement:
    """
    A placed component as seen on the board image.

    Attributes:
        id: reference designator, e.g. "U3".
        package: package name, e.g. "DIP-16".
        bounds: body bounding box in image pixels.
        rotation_deg: extra rotation applied to the pin axes (counter-clockwise
            in image coordinates).
    """
    id: str
    package: str
    bounds: RectInt
    rotation_deg: float = 0.0

    @property
    def center(self) -> Point2D:
        return self.bounds.center

    @classmethod
    def from_dict(cls, d: Mapping) -> "ComponentPlacement":
        b = d["bounds"]
        return cls(
            id=str(d["id"]),
            package=str(d["package"]),
            bounds=RectInt(int(b["x"]), int(b["y"]), int(b["width"]), int(b["height"])),
            rotation_deg=float(d.get("rotation", 0.0)),
        )
