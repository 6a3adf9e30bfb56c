"""
Component pin grids

This package provides:
- Standard DIP package geometry and component placements
- Pin-grid reconstruction on the solder side: rough pads, pristine-pad
  profiling, translation-only grid fit, validation, pin-1 and numbering
"""
from .packages import STANDARD_PACKAGES, ComponentPlacement, PackageSpec, parse_dip_pin_count
from .pins import PinDetectionResult, PinParams, detect_pins, expected_dip_pin_positions, fit_rigid_grid

__all__ = [
    "STANDARD_PACKAGES",
    "ComponentPlacement",
    "PackageSpec",
    "parse_dip_pin_count",
    "PinDetectionResult",
    "PinParams",
    "detect_pins",
    "expected_dip_pin_positions",
    "fit_rigid_grid",
]
