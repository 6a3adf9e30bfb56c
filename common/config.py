"""
YAML configuration -> TracerContext.

The context is built once by the caller (CLI, tests, a UI) and handed to the
functions that need tunables, the package catalogue or classifier samples.
Nothing is cached at module level.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Type, TypeVar

import yaml

from alignment.contact_grid import ContactParams
from alignment.via_align import AlignmentParams
from common.errors import ConfigError
from component.packages import STANDARD_PACKAGES, PackageSpec
from component.pins import PinParams
from via.classifier import TrainingSet
from via.fusion import FusionParams
from via.params import MatchParams, ViaParams

D = TypeVar("D")

DEFAULT_CONFIG_PATH = "config/params.yaml"

_SECTIONS = (
    "logging", "alignment", "contacts", "vias", "matching",
    "fusion", "pins", "packages", "classifier", "workers",
)


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    level: str = "INFO"
    metrics_file: str = "logs/trace.jsonl"
    log_file: Optional[str] = None


@dataclass(slots=True)
class TracerContext:
    via: ViaParams = field(default_factory=ViaParams)
    contacts: ContactParams = field(default_factory=ContactParams)
    pins: PinParams = field(default_factory=PinParams)
    fusion: FusionParams = field(default_factory=FusionParams)
    alignment: AlignmentParams = field(default_factory=AlignmentParams)
    matching: MatchParams = field(default_factory=MatchParams)
    packages: Dict[str, PackageSpec] = field(default_factory=lambda: dict(STANDARD_PACKAGES))
    workers: Optional[int] = None
    classifier: TrainingSet = field(default_factory=TrainingSet)
    classifier_threshold: float = 0.5
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _build(cls: Type[D], section: Optional[Mapping[str, Any]], name: str) -> D:
    if section is None:
        return cls()
    if not isinstance(section, Mapping):
        raise ConfigError(f"section '{name}' must be a mapping", {"section": name})
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(section) - known)
    if unknown:
        raise ConfigError(f"unknown keys in '{name}': {', '.join(unknown)}", {"section": name, "keys": unknown})
    try:
        return cls(**section)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid values in '{name}': {e}", {"section": name}) from e


def _packages(section: Optional[Mapping[str, Any]]) -> Dict[str, PackageSpec]:
    catalogue = dict(STANDARD_PACKAGES)
    for name, spec in (section or {}).items():
        key = str(name).strip().upper()
        catalogue[key] = _build(PackageSpec, {"name": key, **(spec or {})}, f"packages.{name}")
    return catalogue


def _classifier(section: Optional[Mapping[str, Any]]) -> tuple:
    if section is None:
        return TrainingSet(), 0.5
    unknown = sorted(set(section) - {"threshold", "samples"})
    if unknown:
        raise ConfigError(f"unknown keys in 'classifier': {', '.join(unknown)}", {"section": "classifier", "keys": unknown})
    try:
        samples = TrainingSet.from_records(section.get("samples") or [])
    except (KeyError, ValueError) as e:
        raise ConfigError(f"invalid classifier sample: {e}", {"section": "classifier"}) from e
    return samples, float(section.get("threshold", 0.5))


def load_config(path: str = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Raw YAML mapping; an empty dict when the file does not exist."""
    p = Path(path)
    if not p.exists():
        return {}
    with p.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return data


def context_from_dict(P: Mapping[str, Any]) -> TracerContext:
    unknown = sorted(set(P) - set(_SECTIONS))
    if unknown:
        raise ConfigError(f"unknown config sections: {', '.join(unknown)}", {"keys": unknown})

    workers = P.get("workers")
    if workers is not None and (not isinstance(workers, int) or workers < 1):
        raise ConfigError("workers must be a positive integer or null", {"workers": workers})

    training, threshold = _classifier(P.get("classifier"))
    return TracerContext(
        via=_build(ViaParams, P.get("vias"), "vias"),
        contacts=_build(ContactParams, P.get("contacts"), "contacts"),
        pins=_build(PinParams, P.get("pins"), "pins"),
        fusion=_build(FusionParams, P.get("fusion"), "fusion"),
        alignment=_build(AlignmentParams, P.get("alignment"), "alignment"),
        matching=_build(MatchParams, P.get("matching"), "matching"),
        packages=_packages(P.get("packages")),
        workers=workers,
        classifier=training,
        classifier_threshold=threshold,
        logging=_build(LoggingConfig, P.get("logging"), "logging"),
    )


def load_context(path: str = DEFAULT_CONFIG_PATH) -> TracerContext:
    """Defaults for every missing file, section or key; ConfigError for unknown ones."""
    return context_from_dict(load_config(path))
