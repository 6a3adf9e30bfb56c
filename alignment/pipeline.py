from __future__ import annotations

import argparse
import json
import sys
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import cv2
import numpy as np
import yaml

from alignment.contact_grid import ContactRowSeeds, fit_contact_row
from alignment.transform import warp_affine
from alignment.via_align import align_with_vias
from common.config import DEFAULT_CONFIG_PATH, TracerContext, load_context
from common.errors import ConfigError, TracerError
from common.events import EventCallback, EventRecorder
from common.logging_setup import get_logger, setup_logging
from common.types import Side, Via
from common.utils import iso_now_ms
from component.packages import ComponentPlacement, lookup_package
from component.pins import detect_pins
from via.bright_core import detect_bright_cores
from via.classifier import ViaClassifier, filter_with_classifier
from via.detector import dedupe_vias, detect_vias
from via.match import match_vias_across_sides

log = get_logger("alignment.pipeline")


class PipelineStage(str, Enum):
    """Last stage to run; later stages are skipped."""
    ALIGN = "align"
    CONTACTS = "contacts"
    VIAS = "vias"
    PINS = "pins"

    @property
    def order(self) -> int:
        return list(PipelineStage).index(self)


def _write_metrics_row(path: Path, row: Dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", buffering=1) as f:
        f.write(json.dumps(row, default=str) + "\n")


def _read_image(path: str) -> np.ndarray:
    img = cv2.imread(path, cv2.IMREAD_COLOR)
    if img is None:
        raise TracerError(f"cannot read image: {path}", {"path": path})
    return img


def load_components(path: Optional[str]) -> List[ComponentPlacement]:
    """
    Component list YAML:
        components:
          - {id: U1, package: DIP-16, bounds: {x: 100, y: 80, width: 60, height: 250}, rotation: 0}
    Bounds are in the front (aligned) frame.
    """
    if not path:
        return []
    items = _yaml_items(path, "components")
    try:
        return [ComponentPlacement.from_dict(c) for c in items]
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigError(f"{path}: invalid component entry: {e}", {"path": path}) from e


def load_contact_rows(path: Optional[str]) -> List[ContactRowSeeds]:
    """
    Contact seed YAML:
        contact_rows:
          - name: J1-top
            count: 50
            horizontal: true
            side: front
            spec: {pitch_in: 0.1, width_in: 0.06, height_in: 0.3}
            seeds:
              - {x: 40, y: 900, width: 36, height: 180}
    Seeds are in the front (aligned) frame; `spec` is optional.
    """
    if not path:
        return []
    items = _yaml_items(path, "contact_rows")
    try:
        return [ContactRowSeeds.from_dict(r) for r in items]
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigError(f"{path}: invalid contact row: {e}", {"path": path}) from e


def _yaml_items(path: str, key: str) -> List[Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise TracerError(f"cannot read {key} file: {path}", {"path": path}) from e
    items = data.get(key, []) if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise ConfigError(f"{path}: '{key}' must be a list", {"path": path})
    return items


def _side_vias(
    image: np.ndarray,
    side: Side,
    dpi: float,
    ctx: TracerContext,
    on_event: Optional[EventCallback],
    detected: Optional[List[Via]] = None,
) -> List[Via]:
    params = ctx.via.with_dpi(dpi)
    if detected is None:
        detected = detect_vias(image, side, params, dpi, on_event).vias
    cores = detect_bright_cores(image, side, params, dpi, on_event).vias
    min_r, _ = params.radius_range()
    merged, _ = dedupe_vias(list(detected) + cores, float(min_r))
    merged.sort(key=lambda v: (round(v.center.y), round(v.center.x)))

    if ctx.classifier.samples:
        clf = ViaClassifier(ctx.classifier)
        clf.train(image, side)
        merged = filter_with_classifier(merged, clf, image, ctx.classifier_threshold)
    return merged


def run_pipeline(
    front_bgr: np.ndarray,
    back_bgr: np.ndarray,
    dpi: float,
    ctx: TracerContext,
    components: Optional[List[ComponentPlacement]] = None,
    stage: PipelineStage = PipelineStage.PINS,
    *,
    rng: Optional[np.random.Generator] = None,
    on_event: Optional[EventCallback] = None,
    contact_rows: Optional[List[ContactRowSeeds]] = None,
) -> Dict[str, Any]:
    """
    Align back onto front, rebuild connector contact rows, confirm vias across
    sides, then fit component pins.

    Returns a JSON-ready summary with one key per completed stage plus
    "status" ("ok" or the failing stage's reason).
    """
    out: Dict[str, Any] = {"status": "ok", "dpi": dpi, "stage": stage.value}

    # the front is never warped; its detections serve alignment and matching
    front_detected = detect_vias(front_bgr, Side.FRONT, ctx.via, dpi, on_event).vias
    alignment = align_with_vias(
        front_bgr, back_bgr, dpi,
        via_params=ctx.via, params=ctx.alignment, workers=ctx.workers, rng=rng, on_event=on_event,
        front_vias=front_detected,
    )
    out["alignment"] = alignment.to_dict()
    if not alignment.ok:
        out["status"] = alignment.reason
        return out
    if stage.order <= PipelineStage.ALIGN.order:
        return out

    h, w = front_bgr.shape[:2]
    back_aligned = warp_affine(back_bgr, alignment.transform, (w, h))

    rows: List[Dict[str, Any]] = []
    for row in contact_rows or []:
        image = front_bgr if row.side is Side.FRONT else back_aligned
        fit = fit_contact_row(
            image, row.seeds, row.expected_count,
            horizontal=row.horizontal, dpi=dpi, spec=row.spec,
            params=ctx.contacts, workers=ctx.workers, on_event=on_event,
        )
        rows.append({"name": row.name, "side": row.side.value, **fit.to_dict()})
    out["contacts"] = rows
    if stage.order <= PipelineStage.CONTACTS.order:
        return out

    front_vias = _side_vias(front_bgr, Side.FRONT, dpi, ctx, on_event, detected=front_detected)
    back_vias = _side_vias(back_aligned, Side.BACK, dpi, ctx, on_event)
    match = match_vias_across_sides(
        front_vias, back_vias, ctx.matching.tolerance_px(dpi),
        fusion=ctx.fusion, workers=ctx.workers, on_event=on_event,
    )
    out["vias"] = match.to_dict()
    if stage.order <= PipelineStage.VIAS.order:
        return out

    pins: List[Dict[str, Any]] = []
    for comp in components or []:
        package = lookup_package(ctx.packages, comp.package)
        if package is None:
            log.warning("unknown package, skipping component", extra={"extra": {"component": comp.id, "package": comp.package}})
            pins.append({"component_id": comp.id, "skipped": "unknown_package"})
            continue
        result = detect_pins(back_aligned, comp, package, dpi, params=ctx.pins, on_event=on_event)
        pins.append(result.to_dict())
    out["pins"] = pins
    return out


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="PCB tracer: align scans, rebuild contact rows, confirm vias, fit pin grids")
    ap.add_argument("--front", required=True, help="Component-side scan")
    ap.add_argument("--back", required=True, help="Solder-side scan")
    ap.add_argument("--dpi", type=float, required=True)
    ap.add_argument("--config", default=DEFAULT_CONFIG_PATH)
    ap.add_argument("--components", default=None, help="YAML list of component placements")
    ap.add_argument("--contacts", default=None, help="YAML list of connector contact seed rows")
    ap.add_argument("--stage", choices=[s.value for s in PipelineStage], default=PipelineStage.PINS.value)
    ap.add_argument("--seed", type=int, default=None, help="RANSAC seed for reproducible runs")
    ap.add_argument("--out", default=None, help="JSONL output (default: logging.metrics_file)")
    args = ap.parse_args(argv)

    try:
        ctx = load_context(args.config)
    except ConfigError as e:
        setup_logging("INFO")
        log.error("invalid configuration", extra={"extra": e.to_dict()})
        return 2
    setup_logging(ctx.logging.level, log_file=ctx.logging.log_file)
    out_path = Path(args.out or ctx.logging.metrics_file)

    recorder = EventRecorder()
    try:
        front = _read_image(args.front)
        back = _read_image(args.back)
        components = load_components(args.components)
        contact_rows = load_contact_rows(args.contacts)
    except TracerError as e:
        log.error("input error", extra={"extra": e.to_dict()})
        return 2

    seed = args.seed if args.seed is not None else ctx.alignment.seed
    log.info("pipeline started", extra={"extra": {"front": args.front, "back": args.back, "dpi": args.dpi, "stage": args.stage}})
    summary = run_pipeline(
        front, back, args.dpi, ctx, components, PipelineStage(args.stage),
        rng=np.random.default_rng(seed), on_event=recorder, contact_rows=contact_rows,
    )

    ts = iso_now_ms()
    for ev in recorder.events:
        _write_metrics_row(out_path, {"ts": ts, "type": "event", **ev.to_dict()})
    _write_metrics_row(out_path, {"ts": ts, "type": "summary", **summary})
    log.info("pipeline finished", extra={"extra": {"status": summary["status"], "events": len(recorder.events), "out": str(out_path)}})
    return 0 if summary["status"] == "ok" else 1


if __name__ == "__main__":
    sys.exit(main())
