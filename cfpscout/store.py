"""Persistence layer: every public operation is atomic per call and commits on its own."""
from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cfpscout.models import (
    CRITERIA,
    SCORE_COLUMNS,
    SessionSpeaker,
    SessionStatus,
    Speaker,
    SpeakerEvaluation,
    TalkSession,
)
from cfpscout.schemas import SessionEvaluationResult, SpeakerAssessmentResult, SpeakerRecord
from cfpscout.utils import to_json, utc_now

log = logging.getLogger(__name__)


class PersistenceError(Exception):
    """The store could not be read or written."""


@contextmanager
def _write(session: Session, what: str) -> Iterator[None]:
    try:
        yield
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise PersistenceError(f"{what} failed: {exc}") from exc


@contextmanager
def _read(session: Session, what: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        session.rollback()
        raise PersistenceError(f"{what} failed: {exc}") from exc


@dataclass
class SessionWithSpeakers:
    session: TalkSession
    speakers: list[Speaker] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


def _clear_scores(row: TalkSession) -> None:
    for col in SCORE_COLUMNS:
        setattr(row, col, None)


def upsert_session(session: Session, data: Mapping[str, Any]) -> TalkSession:
    """Insert or wholesale-replace a session by id. The row goes back to ``new``."""
    session_id = str(data["id"])
    with _write(session, f"upsert session {session_id}"):
        row = session.get(TalkSession, session_id)
        if row is None:
            row = TalkSession(id=session_id)
            session.add(row)
        row.title = str(data.get("title") or "")
        row.session_data = json.dumps(dict(data), ensure_ascii=False)
        row.status = SessionStatus.NEW.value
        _clear_scores(row)
        row.created_at = utc_now()
    return row


def upsert_speaker(session: Session, data: SpeakerRecord | Mapping[str, Any]) -> Speaker:
    """Insert or wholesale-replace a speaker by id."""
    record = data if isinstance(data, SpeakerRecord) else SpeakerRecord.model_validate(data)
    with _write(session, f"upsert speaker {record.id}"):
        row = session.get(Speaker, record.id)
        if row is None:
            row = Speaker(id=record.id)
            session.add(row)
        row.first_name = record.first_name
        row.last_name = record.last_name
        row.full_name = record.full_name or f"{record.first_name} {record.last_name}".strip()
        row.bio = record.bio or ""
        row.tag_line = record.tag_line or ""
        row.profile_picture = record.profile_picture or ""
        row.is_top_speaker = record.is_top_speaker
        row.sessions_json = to_json(record.sessions)
        row.links_json = to_json(record.links)
        row.question_answers_json = to_json(record.question_answers)
        row.categories_json = to_json(record.categories)
        row.created_at = utc_now()
    return row


def link_session_speaker(session: Session, session_id: str, speaker_id: str) -> bool:
    """Insert a junction row. Returns False when the pair already exists."""
    with _write(session, f"link {session_id} -> {speaker_id}"):
        if session.get(SessionSpeaker, (session_id, speaker_id)) is not None:
            return False
        session.add(SessionSpeaker(session_id=session_id, speaker_id=speaker_id))
    return True


def record_session_evaluation(
    session: Session, session_id: str, result: SessionEvaluationResult,
) -> TalkSession | None:
    """Store the four criterion scores and mark the session ``ready``.

    Calling twice overwrites. Returns None for an unknown session id.
    """
    with _write(session, f"record evaluation for {session_id}"):
        row = session.get(TalkSession, session_id)
        if row is None:
            return None
        for key, score_col, just_col in CRITERIA:
            criterion = getattr(result, key)
            setattr(row, score_col, criterion.score)
            setattr(row, just_col, criterion.justification)
        row.evaluation_results = result.model_dump_json(by_alias=True)
        row.evaluation_score_total = result.total
        row.status = SessionStatus.READY.value
        row.completed_at = utc_now()
    return row


def append_speaker_evaluation(
    session: Session, speaker_id: str, profile_url: str, result: SpeakerAssessmentResult,
) -> SpeakerEvaluation:
    """Append a new evaluation row. Existing rows are never touched."""
    row = SpeakerEvaluation(
        speaker_id=speaker_id,
        profile_url=profile_url,
        expertise_match=result.expertise_match,
        expertise_match_justification=result.expertise_match_justification,
        topics_relevance=result.topics_relevance,
        topics_relevance_justification=result.topics_relevance_justification,
        created_at=utc_now(),
    )
    with _write(session, f"append evaluation for speaker {speaker_id}"):
        session.add(row)
    return row


def bulk_reset_processed_sessions(session: Session) -> int:
    """Move every ``ready`` session back to ``new`` and clear its scores."""
    stmt = (
        update(TalkSession)
        .where(TalkSession.status == SessionStatus.READY.value)
        .values(status=SessionStatus.NEW.value, **{col: None for col in SCORE_COLUMNS})
    )
    with _write(session, "reset processed sessions"):
        count = session.execute(stmt).rowcount or 0
    log.info("Reset %d processed sessions", count)
    return count


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def get_session_record(session: Session, session_id: str) -> TalkSession | None:
    with _read(session, f"load session {session_id}"):
        return session.get(TalkSession, session_id)


def get_speaker(session: Session, speaker_id: str) -> Speaker | None:
    with _read(session, f"load speaker {speaker_id}"):
        return session.get(Speaker, speaker_id)


def get_all_speakers(session: Session) -> list[Speaker]:
    with _read(session, "load speakers"):
        return list(session.execute(
            select(Speaker).order_by(Speaker.full_name, Speaker.id)
        ).scalars().all())


def get_all_sessions(session: Session) -> list[TalkSession]:
    with _read(session, "load sessions"):
        return list(session.execute(
            select(TalkSession).order_by(TalkSession.created_at.asc(), TalkSession.id.asc())
        ).scalars().all())


def get_speaker_ids(session: Session) -> set[str]:
    with _read(session, "load speaker ids"):
        return set(session.execute(select(Speaker.id)).scalars().all())


def count_sessions(session: Session) -> int:
    with _read(session, "count sessions"):
        return session.execute(select(func.count()).select_from(TalkSession)).scalar_one()


def get_unprocessed_sessions(session: Session) -> list[TalkSession]:
    with _read(session, "load unprocessed sessions"):
        return list(session.execute(
            select(TalkSession)
            .where(TalkSession.status == SessionStatus.NEW.value)
            .order_by(TalkSession.created_at.asc(), TalkSession.id.asc())
        ).scalars().all())


def get_processed_sessions(session: Session) -> list[TalkSession]:
    with _read(session, "load processed sessions"):
        return list(session.execute(
            select(TalkSession)
            .where(TalkSession.status == SessionStatus.READY.value)
            .order_by(TalkSession.completed_at.desc(), TalkSession.id.asc())
        ).scalars().all())


def get_related_speakers(session: Session, session_id: str) -> list[Speaker]:
    with _read(session, f"load speakers for session {session_id}"):
        return list(session.execute(
            select(Speaker)
            .join(SessionSpeaker, SessionSpeaker.speaker_id == Speaker.id)
            .where(SessionSpeaker.session_id == session_id)
            .order_by(Speaker.full_name, Speaker.id)
        ).scalars().all())


def get_sessions_with_speakers(session: Session, status: str | None = None) -> list[SessionWithSpeakers]:
    """Left-join sessions to their speakers, one record per session."""
    stmt = (
        select(TalkSession, Speaker)
        .outerjoin(SessionSpeaker, SessionSpeaker.session_id == TalkSession.id)
        .outerjoin(Speaker, Speaker.id == SessionSpeaker.speaker_id)
        .order_by(TalkSession.created_at.asc(), TalkSession.id.asc(), Speaker.full_name)
    )
    if status is not None:
        stmt = stmt.where(TalkSession.status == status)
    with _read(session, "load sessions with speakers"):
        rows = session.execute(stmt).all()

    grouped: dict[str, SessionWithSpeakers] = {}
    for talk, speaker in rows:
        entry = grouped.get(talk.id)
        if entry is None:
            entry = grouped[talk.id] = SessionWithSpeakers(session=talk)
        if speaker is not None:
            entry.speakers.append(speaker)
    return list(grouped.values())


def get_speaker_evaluation(
    session: Session, speaker_id: str, latest: bool = True,
) -> SpeakerEvaluation | list[SpeakerEvaluation] | None:
    """Return the current evaluation, or the full history (newest first) when ``latest`` is False.

    Returns None when the speaker has no evaluations.
    """
    stmt = (
        select(SpeakerEvaluation)
        .where(SpeakerEvaluation.speaker_id == speaker_id)
        .order_by(SpeakerEvaluation.created_at.desc(), SpeakerEvaluation.id.desc())
    )
    with _read(session, f"load evaluations for speaker {speaker_id}"):
        if latest:
            return session.execute(stmt.limit(1)).scalars().first()
        history = list(session.execute(stmt).scalars().all())
    return history or None


def _average(values: list[int]) -> float | None:
    if not values:
        return None
    return round(sum(values) / len(values), 2)


def aggregate_stats(session: Session) -> dict[str, Any]:
    """Counts by status/flag and average scores. Averages over empty sets are None."""
    with _read(session, "aggregate stats"):
        by_status = dict(session.execute(
            select(TalkSession.status, func.count()).group_by(TalkSession.status)
        ).all())
        processed = session.execute(
            select(TalkSession).where(TalkSession.status == SessionStatus.READY.value)
        ).scalars().all()
        speaker_total = session.execute(select(func.count()).select_from(Speaker)).scalar_one()
        with_sessions = session.execute(
            select(func.count(func.distinct(SessionSpeaker.speaker_id)))
        ).scalar_one()
        top_speakers = session.execute(
            select(func.count()).select_from(Speaker).where(Speaker.is_top_speaker.is_(True))
        ).scalar_one()
        evaluations = session.execute(
            select(SpeakerEvaluation).order_by(SpeakerEvaluation.created_at, SpeakerEvaluation.id)
        ).scalars().all()

    current: dict[str, SpeakerEvaluation] = {}
    for ev in evaluations:
        current[ev.speaker_id] = ev  # ascending order, so the last row wins

    return {
        "sessions": {
            "total": sum(by_status.values()),
            "processed": by_status.get(SessionStatus.READY.value, 0),
            "unprocessed": by_status.get(SessionStatus.NEW.value, 0),
            "average_total_score": _average(
                [s.evaluation_score_total for s in processed if s.evaluation_score_total is not None]
            ),
            "average_criteria": {
                key: _average([getattr(s, score_col) for s in processed if getattr(s, score_col) is not None])
                for key, score_col, _ in CRITERIA
            },
        },
        "speakers": {
            "total": speaker_total,
            "with_sessions": with_sessions,
            "top_speakers": top_speakers,
        },
        "speaker_evaluations": {
            "rows": len(evaluations),
            "evaluated_speakers": len(current),
            "average_expertise_match": _average([e.expertise_match for e in current.values()]),
            "average_topics_relevance": _average([e.topics_relevance for e in current.values()]),
        },
    }
