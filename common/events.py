"""
Structured decision events.

Every algorithm that takes a fallback, rejects a candidate, or makes a
non-obvious choice reports it through `emit`. The event is logged with the JSON
formatter and, when the caller passed a callback, delivered to it so tests and
tools can assert on decisions without scraping log output.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

DECISION = "decision"
FALLBACK = "fallback"
REJECTED = "rejected"
FAILURE = "failure"

_KINDS = (DECISION, FALLBACK, REJECTED, FAILURE)


@dataclass(slots=True)
class DecisionEvent:
    stage: str
    kind: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.kind not in _KINDS:
            raise ValueError(f"unknown event kind: {self.kind}")

    def to_dict(self) -> Dict[str, Any]:
        return {"stage": self.stage, "kind": self.kind, "message": self.message, "data": dict(self.data)}


EventCallback = Callable[[DecisionEvent], None]


def emit(
    callback: Optional[EventCallback],
    logger: logging.Logger,
    stage: str,
    kind: str,
    message: str,
    **data: Any,
) -> DecisionEvent:
    """Log a decision and forward it to `callback` (if any)."""
    event = DecisionEvent(stage=stage, kind=kind, message=message, data=data)
    level = logging.DEBUG if kind == DECISION else logging.INFO
    logger.log(level, message, extra={"extra": event.to_dict()})
    if callback is not None:
        callback(event)
    return event


class EventRecorder:
    """Callable collector, handy as `on_event=` in tests and the CLI."""

    def __init__(self) -> None:
        self.events: List[DecisionEvent] = []

    def __call__(self, event: DecisionEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: str) -> List[DecisionEvent]:
        return [e for e in self.events if e.kind == kind]

    def for_stage(self, stage: str) -> List[DecisionEvent]:
        return [e for e in self.events if e.stage == stage]

    def clear(self) -> None:
        self.events.clear()
