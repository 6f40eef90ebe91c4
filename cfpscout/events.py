"""Workflow stages and the structured events they emit."""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from cfpscout.utils import utc_now

log = logging.getLogger(__name__)


class Stage(StrEnum):
    INGEST = "ingest"
    EVALUATE_SESSION = "evaluate_session"
    FETCH_SPEAKERS = "fetch_speakers"
    ASSESS_SPEAKERS = "assess_speakers"
    AGGREGATE = "aggregate"


class EventKind(StrEnum):
    ENTERED = "stage_entered"
    COMPLETED = "stage_completed"
    FAILED = "stage_failed"


@dataclass(frozen=True)
class StageEvent:
    run_id: str
    entity_id: str
    stage: Stage
    kind: EventKind
    detail: str = ""
    at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, str]:
        return {
            "run_id": self.run_id,
            "entity_id": self.entity_id,
            "stage": self.stage.value,
            "kind": self.kind.value,
            "detail": self.detail,
            "at": self.at.isoformat(),
        }


Subscriber = Callable[[StageEvent], None]


class EventBus:
    """Synchronous fan-out of stage events to subscribers.

    A subscriber that raises is logged and skipped; it never affects the
    workflow that emitted the event.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, fn: Subscriber) -> Subscriber:
        self._subscribers.append(fn)
        return fn

    def unsubscribe(self, fn: Subscriber) -> None:
        if fn in self._subscribers:
            self._subscribers.remove(fn)

    def emit(self, event: StageEvent) -> None:
        for fn in list(self._subscribers):
            try:
                fn(event)
            except Exception:
                log.exception("Event subscriber %r failed on %s", fn, event.kind.value)


def log_stage_event(event: StageEvent) -> None:
    if event.kind is EventKind.FAILED:
        log.warning("[%s] %s %s failed: %s", event.run_id, event.entity_id, event.stage.value, event.detail)
    elif event.kind is EventKind.COMPLETED:
        log.info(
            "[%s] %s %s done%s", event.run_id, event.entity_id, event.stage.value,
            f" ({event.detail})" if event.detail else "",
        )
    else:
        log.debug("[%s] %s %s started", event.run_id, event.entity_id, event.stage.value)


def default_bus() -> EventBus:
    bus = EventBus()
    bus.subscribe(log_stage_event)
    return bus


@dataclass
class StageOutcome:
    detail: str = ""


class StageRecorder:
    """Emits enter/complete/fail events for one workflow run and keeps its own copy."""

    def __init__(self, run_id: str, entity_id: str, bus: EventBus | None = None):
        self.run_id = run_id
        self.entity_id = entity_id
        self.bus = bus
        self.events: list[StageEvent] = []

    def _emit(self, stage: Stage, kind: EventKind, detail: str = "") -> None:
        event = StageEvent(self.run_id, self.entity_id, stage, kind, detail)
        self.events.append(event)
        if self.bus is not None:
            self.bus.emit(event)

    @contextmanager
    def stage(self, stage: Stage) -> Iterator[StageOutcome]:
        self._emit(stage, EventKind.ENTERED)
        outcome = StageOutcome()
        try:
            yield outcome
        except Exception as exc:
            self._emit(stage, EventKind.FAILED, f"{type(exc).__name__}: {exc}")
            raise
        self._emit(stage, EventKind.COMPLETED, outcome.detail)
