"""Run drivers: drain unprocessed sessions, or assess every speaker, and report per run."""
from __future__ import annotations

import json
import logging
from collections.abc import Callable
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy.orm import Session

from cfpscout import store
from cfpscout.config import get_settings
from cfpscout.db import get_session
from cfpscout.evaluator import Evaluator
from cfpscout.events import EventBus
from cfpscout.models import SessionStatus
from cfpscout.store import PersistenceError
from cfpscout.taskqueue import TaskQueue
from cfpscout.utils import utc_now
from cfpscout.workflow import SessionWorkflow, SpeakerRunResult, SpeakerWorkflow, WorkflowResult

log = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


@dataclass
class FailedUnit:
    session_id: str
    error: str


@dataclass
class ProcessSummary:
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None
    queued: int = 0
    processed: list[WorkflowResult] = field(default_factory=list)
    failed: list[FailedUnit] = field(default_factory=list)
    skipped: int = 0
    interrupted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "queued": self.queued,
            "processedCount": len(self.processed),
            "failedCount": len(self.failed),
            "skipped": self.skipped,
            "interrupted": self.interrupted,
            "processed": [r.to_dict() for r in self.processed],
            "failed": [{"sessionId": f.session_id, "error": f.error} for f in self.failed],
        }


class SessionProcessor:
    """Drain every ``new`` session through :class:`SessionWorkflow` under a session-level cap.

    Each unit gets its own database session from *session_factory*. A unit
    that fails leaves its session ``new``. The first persistence failure stops
    scheduling further units and is re-raised once in-flight units settle.
    """

    def __init__(
        self,
        evaluator: Evaluator,
        *,
        session_factory: SessionFactory = get_session,
        concurrency: int | None = None,
        speaker_concurrency: int | None = None,
        conference: str | None = None,
        bus: EventBus | None = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.concurrency = concurrency or settings.session_concurrency
        self.workflow = SessionWorkflow(
            evaluator,
            conference=conference,
            speaker_concurrency=speaker_concurrency,
            bus=bus,
        )
        self._queue: TaskQueue[str, WorkflowResult] | None = None
        self._interrupted = False

    def request_drain(self) -> int:
        """Stop scheduling pending sessions. Returns how many were dropped."""
        self._interrupted = True
        return self._queue.kill() if self._queue is not None else 0

    async def _process_one(self, session_id: str) -> WorkflowResult:
        with closing(self.session_factory()) as db:
            talk = store.get_session_record(db, session_id)
            if talk is None or talk.status != SessionStatus.NEW.value:
                raise LookupError(f"Session {session_id} is no longer pending")
            try:
                return await self.workflow.run(db, talk)
            except PersistenceError:
                if self._queue is not None:
                    self._queue.kill()
                raise

    async def run(self, limit: int | None = None) -> ProcessSummary:
        summary = ProcessSummary()
        with closing(self.session_factory()) as db:
            pending = [talk.id for talk in store.get_unprocessed_sessions(db)]
        if limit is not None:
            pending = pending[:limit]
        summary.queued = len(pending)
        log.info("Processing %d sessions (concurrency %d)", len(pending), self.concurrency)

        queue = self._queue = TaskQueue(self._process_one, self.concurrency, name="sessions")
        if not self._interrupted:
            for session_id in pending:
                queue.push(session_id)
        queue.close()
        await queue.drained()

        summary.finished_at = utc_now()
        summary.interrupted = self._interrupted
        order = {session_id: idx for idx, session_id in enumerate(pending)}
        summary.processed = sorted(queue.results, key=lambda r: order[r.session_id])
        summary.failed = [FailedUnit(str(f.item), str(f.error)) for f in queue.errors]
        summary.skipped = summary.queued - len(summary.processed) - len(summary.failed)
        log.info(
            "Run finished: %d processed, %d failed, %d skipped%s",
            len(summary.processed), len(summary.failed), summary.skipped,
            " (interrupted)" if summary.interrupted else "",
        )

        for failure in queue.errors:
            if isinstance(failure.error, PersistenceError):
                raise failure.error
        return summary


async def process_unprocessed_sessions(
    evaluator: Evaluator,
    *,
    session_factory: SessionFactory = get_session,
    concurrency: int | None = None,
    speaker_concurrency: int | None = None,
    limit: int | None = None,
    bus: EventBus | None = None,
) -> ProcessSummary:
    processor = SessionProcessor(
        evaluator,
        session_factory=session_factory,
        concurrency=concurrency,
        speaker_concurrency=speaker_concurrency,
        bus=bus,
    )
    return await processor.run(limit=limit)


class SpeakerAssessor:
    """Run :class:`SpeakerWorkflow` on its own database session."""

    def __init__(
        self,
        evaluator: Evaluator,
        *,
        session_factory: SessionFactory = get_session,
        concurrency: int | None = None,
        conference: str | None = None,
        bus: EventBus | None = None,
    ):
        self.session_factory = session_factory
        self.workflow = SpeakerWorkflow(evaluator, conference=conference, concurrency=concurrency, bus=bus)

    def request_drain(self) -> int:
        return self.workflow.request_drain()

    async def run(self) -> SpeakerRunResult:
        with closing(self.session_factory()) as db:
            return await self.workflow.run(db)


def write_results(path: str | Path, payload: dict[str, Any]) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    log.info("Wrote run summary to %s", path)
    return path
