"""
Front/back registration and contact-row reconstruction

This package provides:
- Robust affine and rigid transform estimation (RANSAC + least-squares refit)
- Edge-connector contact rows rebuilt from partial seeds (pitch histogram,
  anchor phase, tilt line, material scoring)
- Back-to-front alignment from vias detected on both scans
- A command-line pipeline that aligns, confirms vias and fits pin grids,
  appending JSON rows to logs/trace.jsonl

Entry point:
    python -m alignment.pipeline --front front.png --back back.png --dpi 600
"""
from .transform import TransformFit, estimate_affine_ransac, estimate_rigid_ransac, alignment_error
from .contact_grid import ContactParams, ContactRowFit, fit_contact_row
from .via_align import AlignmentParams, ViaAlignment, align_with_vias

__all__ = [
    "TransformFit",
    "estimate_affine_ransac",
    "estimate_rigid_ransac",
    "alignment_error",
    "ContactParams",
    "ContactRowFit",
    "fit_contact_row",
    "AlignmentParams",
    "ViaAlignment",
    "align_with_vias",
]
