from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from cfpscout.utils import utc_now


class Base(DeclarativeBase):
    pass


class SessionStatus(StrEnum):
    NEW = "new"
    READY = "ready"


# (criterion key, score column, justification column), in scoring order
CRITERIA: tuple[tuple[str, str, str], ...] = (
    ("title", "title_score", "title_justification"),
    ("description", "description_score", "description_justification"),
    ("key_takeaways", "key_takeaways_score", "key_takeaways_justification"),
    ("given_before", "given_before_score", "given_before_justification"),
)

SCORE_COLUMNS: tuple[str, ...] = tuple(
    col for _, score_col, just_col in CRITERIA for col in (score_col, just_col)
) + ("evaluation_results", "evaluation_score_total", "completed_at")


class SessionSpeaker(Base):
    __tablename__ = "session_speakers"

    session_id: Mapped[str] = mapped_column(String(64), ForeignKey("sessions.id"), primary_key=True)
    speaker_id: Mapped[str] = mapped_column(String(64), ForeignKey("speakers.id"), primary_key=True)


class TalkSession(Base):
    """A submitted talk proposal. Named to avoid clashing with ``sqlalchemy.orm.Session``."""

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    session_data: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=SessionStatus.NEW.value, index=True)
    evaluation_results: Mapped[str | None] = mapped_column(Text, nullable=True)
    title_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    title_justification: Mapped[str | None] = mapped_column(Text, nullable=True)
    description_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    description_justification: Mapped[str | None] = mapped_column(Text, nullable=True)
    key_takeaways_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    key_takeaways_justification: Mapped[str | None] = mapped_column(Text, nullable=True)
    given_before_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    given_before_justification: Mapped[str | None] = mapped_column(Text, nullable=True)
    evaluation_score_total: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class Speaker(Base):
    __tablename__ = "speakers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    first_name: Mapped[str] = mapped_column(String(200), default="")
    last_name: Mapped[str] = mapped_column(String(200), default="")
    full_name: Mapped[str] = mapped_column(String(400), default="")
    bio: Mapped[str] = mapped_column(Text, default="")
    tag_line: Mapped[str] = mapped_column(Text, default="")
    profile_picture: Mapped[str] = mapped_column(String(500), default="")
    is_top_speaker: Mapped[bool] = mapped_column(Boolean, default=False)
    sessions_json: Mapped[str] = mapped_column("sessions", Text, default="[]")
    links_json: Mapped[str] = mapped_column("links", Text, default="[]")
    question_answers_json: Mapped[str] = mapped_column("question_answers", Text, default="[]")
    categories_json: Mapped[str] = mapped_column("categories", Text, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)


class SpeakerEvaluation(Base):
    """Append-only speaker assessment log. The latest row per speaker is the current one."""

    __tablename__ = "speaker_evaluations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    speaker_id: Mapped[str] = mapped_column(String(64), ForeignKey("speakers.id"), nullable=False, index=True)
    profile_url: Mapped[str] = mapped_column(String(500), default="")
    expertise_match: Mapped[int] = mapped_column(Integer, nullable=False)
    expertise_match_justification: Mapped[str] = mapped_column(Text, default="")
    topics_relevance: Mapped[int] = mapped_column(Integer, nullable=False)
    topics_relevance_justification: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
