"""
Via detection and cross-side confirmation

This package provides:
- Per-side via detection (Hough circles + contour circularity) and a
  bright-core variant for vias buried in larger bright copper
- Greedy nearest-first matching of front/back vias in the aligned frame
- Boundary fusion of matched pairs into ConfirmedVia records
- An optional feature-statistics classifier fed by labelled samples
"""
from .params import ViaParams, suggest_match_tolerance
from .detector import detect_vias, ViaDetectionResult
from .bright_core import detect_bright_cores
from .match import match_vias_across_sides
from .fusion import confirm_via, fuse_boundaries

__all__ = [
    "ViaParams",
    "suggest_match_tolerance",
    "detect_vias",
    "ViaDetectionResult",
    "detect_bright_cores",
    "match_vias_across_sides",
    "confirm_via",
    "fuse_boundaries",
]
