"""Per-session evaluation workflow and the speaker assessment fan-out.

A session run walks the stages in :class:`cfpscout.events.Stage` order::

    ingest -> evaluate_session -> fetch_speakers -> assess_speakers -> aggregate

Evaluator failures are absorbed with fixed default scores so a run always
reaches ``aggregate``. Persistence failures propagate. The session evaluation
is the last write of a persisted run, so a run that dies earlier leaves the
session ``new`` and it is picked up again next time.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from cfpscout import store
from cfpscout.config import get_settings
from cfpscout.evaluator import (
    Evaluator,
    build_session_prompt,
    build_speaker_prompt,
    session_system_prompt,
    speaker_system_prompt,
)
from cfpscout.events import EventBus, Stage, StageEvent, StageRecorder
from cfpscout.models import Speaker, TalkSession
from cfpscout.schemas import SessionEvaluationResult, SessionSubmission, SpeakerAssessmentResult
from cfpscout.taskqueue import TaskQueue
from cfpscout.utils import json_parse

log = logging.getLogger(__name__)


def _run_id() -> str:
    return uuid.uuid4().hex[:12]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class SpeakerAssessment:
    speaker_id: str
    full_name: str
    profile_url: str
    result: SpeakerAssessmentResult
    used_fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "speakerId": self.speaker_id,
            "fullName": self.full_name,
            "profileUrl": self.profile_url,
            "usedFallback": self.used_fallback,
            **self.result.model_dump(by_alias=True),
        }


@dataclass
class WorkflowResult:
    session_id: str
    title: str
    evaluation: SessionEvaluationResult
    speakers: list[SpeakerAssessment] = field(default_factory=list)
    evaluation_fallback: bool = False
    events: list[StageEvent] = field(default_factory=list)

    @property
    def total_score(self) -> int:
        return self.evaluation.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "title": self.title,
            "evaluation": self.evaluation.model_dump(by_alias=True),
            "evaluationScoreTotal": self.total_score,
            "evaluationFallback": self.evaluation_fallback,
            "speakers": [s.to_dict() for s in self.speakers],
        }


@dataclass
class SpeakerRunResult:
    assessments: list[SpeakerAssessment] = field(default_factory=list)
    events: list[StageEvent] = field(default_factory=list)
    interrupted: bool = False


# ---------------------------------------------------------------------------
# Speaker assessment
# ---------------------------------------------------------------------------


def find_profile_url(links: str | list[Any] | None) -> str:
    """Return the speaker's Sessionize profile URL, or ``""`` when there is none.

    *links* is the stored JSON text (or the already parsed list). Links that
    cannot be parsed are logged and treated as no profile.
    """
    parsed = json_parse(links, default=None) if isinstance(links, str) or links is None else links
    if not isinstance(parsed, list):
        log.warning("Unparseable speaker links, treating as no profile: %.100r", links)
        return ""
    for link in parsed:
        if not isinstance(link, dict):
            continue
        url = str(link.get("url") or "")
        link_type = str(link.get("linkType") or "").lower()
        if url and (link_type == "sessionize" or "sessionize.com" in url or "sessionize.io" in url):
            return url
    return ""


async def assess_speaker(evaluator: Evaluator, speaker: Speaker, conference: str) -> SpeakerAssessment:
    """Score one speaker. Never raises for evaluator problems."""
    url = find_profile_url(speaker.links_json)
    if not url:
        log.info("Speaker %s (%s) has no Sessionize profile, using defaults", speaker.id, speaker.full_name)
        return SpeakerAssessment(speaker.id, speaker.full_name, "", SpeakerAssessmentResult.fallback(), True)
    try:
        result = await evaluator.evaluate(
            speaker_system_prompt(conference),
            build_speaker_prompt(url, conference),
            SpeakerAssessmentResult,
        )
    except Exception as exc:
        log.warning("Assessment of speaker %s failed, using defaults: %s", speaker.id, exc)
        return SpeakerAssessment(speaker.id, speaker.full_name, url, SpeakerAssessmentResult.fallback(), True)
    return SpeakerAssessment(speaker.id, speaker.full_name, url, result)


class SpeakerFanOut:
    """Assess a list of speakers through a bounded :class:`TaskQueue`.

    With a database session every assessment is appended as a new
    SpeakerEvaluation row as soon as it finishes. Results come back in the
    order the speakers were given. The first infrastructure error from any
    lane is re-raised once the queue has drained.
    """

    def __init__(
        self,
        evaluator: Evaluator,
        *,
        conference: str,
        concurrency: int,
        session: Session | None = None,
    ):
        self.evaluator = evaluator
        self.conference = conference
        self.concurrency = concurrency
        self.session = session
        self._queue: TaskQueue[tuple[int, Speaker], tuple[int, SpeakerAssessment]] | None = None
        self._killed = False

    async def _assess(self, item: tuple[int, Speaker]) -> tuple[int, SpeakerAssessment]:
        idx, speaker = item
        assessment = await assess_speaker(self.evaluator, speaker, self.conference)
        if self.session is not None:
            store.append_speaker_evaluation(
                self.session, assessment.speaker_id, assessment.profile_url, assessment.result,
            )
        return idx, assessment

    def kill(self) -> int:
        self._killed = True
        return self._queue.kill() if self._queue is not None else 0

    async def run(self, speakers: Sequence[Speaker]) -> list[SpeakerAssessment]:
        queue = self._queue = TaskQueue(self._assess, self.concurrency, name="speakers")
        if not self._killed:
            for item in enumerate(speakers):
                queue.push(item)
        queue.close()
        await queue.drained()
        if queue.errors:
            raise queue.errors[0].error
        return [assessment for _, assessment in sorted(queue.results, key=lambda r: r[0])]


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------


async def evaluate_submission(
    evaluator: Evaluator, submission: SessionSubmission, conference: str,
) -> tuple[SessionEvaluationResult, bool]:
    """Score a submission. Returns ``(result, used_fallback)`` and never raises."""
    try:
        result = await evaluator.evaluate(
            session_system_prompt(conference),
            build_session_prompt(submission),
            SessionEvaluationResult,
        )
    except Exception as exc:
        log.warning("Evaluation of session %s failed, using defaults: %s", submission.id, exc)
        return SessionEvaluationResult.fallback(), True
    return result, False


class SessionWorkflow:
    """Drive one session through every stage.

    With ``persist=False`` nothing is written; the result is only returned.
    """

    def __init__(
        self,
        evaluator: Evaluator,
        *,
        conference: str | None = None,
        speaker_concurrency: int | None = None,
        bus: EventBus | None = None,
        persist: bool = True,
    ):
        settings = get_settings()
        self.evaluator = evaluator
        self.conference = conference or settings.conference_name
        self.speaker_concurrency = speaker_concurrency or settings.speaker_concurrency
        self.bus = bus
        self.persist = persist

    async def run(self, session: Session, talk: TalkSession) -> WorkflowResult:
        recorder = StageRecorder(_run_id(), talk.id, self.bus)

        with recorder.stage(Stage.INGEST):
            submission = SessionSubmission.model_validate(json_parse(talk.session_data))

        with recorder.stage(Stage.EVALUATE_SESSION) as outcome:
            evaluation, fallback = await evaluate_submission(self.evaluator, submission, self.conference)
            outcome.detail = "defaults used" if fallback else f"total {evaluation.total}"

        with recorder.stage(Stage.FETCH_SPEAKERS) as outcome:
            speakers = store.get_related_speakers(session, talk.id)
            outcome.detail = f"{len(speakers)} speakers"

        with recorder.stage(Stage.ASSESS_SPEAKERS):
            fan_out = SpeakerFanOut(
                self.evaluator,
                conference=self.conference,
                concurrency=self.speaker_concurrency,
                session=session if self.persist else None,
            )
            assessments = await fan_out.run(speakers)

        with recorder.stage(Stage.AGGREGATE):
            result = WorkflowResult(
                session_id=talk.id,
                title=talk.title,
                evaluation=evaluation,
                speakers=assessments,
                evaluation_fallback=fallback,
                events=recorder.events,
            )
            if self.persist:
                store.record_session_evaluation(session, talk.id, evaluation)
        return result


class SpeakerWorkflow:
    """Assess every stored speaker, ordered by full name, and persist each result."""

    def __init__(
        self,
        evaluator: Evaluator,
        *,
        conference: str | None = None,
        concurrency: int | None = None,
        bus: EventBus | None = None,
    ):
        settings = get_settings()
        self.evaluator = evaluator
        self.conference = conference or settings.conference_name
        self.concurrency = concurrency or settings.speaker_concurrency
        self.bus = bus
        self._fan_out: SpeakerFanOut | None = None
        self._interrupted = False

    def request_drain(self) -> int:
        """Stop starting new assessments. In-flight ones still finish and are persisted."""
        self._interrupted = True
        return self._fan_out.kill() if self._fan_out is not None else 0

    async def run(self, session: Session) -> SpeakerRunResult:
        recorder = StageRecorder(_run_id(), "speakers", self.bus)

        with recorder.stage(Stage.FETCH_SPEAKERS) as outcome:
            speakers = store.get_all_speakers(session)
            outcome.detail = f"{len(speakers)} speakers"

        with recorder.stage(Stage.ASSESS_SPEAKERS) as outcome:
            self._fan_out = SpeakerFanOut(
                self.evaluator,
                conference=self.conference,
                concurrency=self.concurrency,
                session=session,
            )
            if self._interrupted:
                self._fan_out.kill()
            assessments = await self._fan_out.run(speakers)
            outcome.detail = f"{len(assessments)} assessed"

        return SpeakerRunResult(assessments=assessments, events=recorder.events, interrupted=self._interrupted)
