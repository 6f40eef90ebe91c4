"""Flatten sessions, speakers and evaluations into dicts, CSV and JSON exports."""
from __future__ import annotations

import json
import logging
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy.orm import Session

from cfpscout import store
from cfpscout.models import Speaker, SpeakerEvaluation, TalkSession
from cfpscout.utils import json_parse

log = logging.getLogger(__name__)

CSV_HEADERS = [
    "id", "title", "description", "speakers", "categories", "questionAnswers",
    "status", "title_score", "title_justification", "description_score", "description_justification",
    "key_takeaways_score", "key_takeaways_justification", "given_before_score", "given_before_justification",
    "evaluation_score_total", "created_at", "completed_at",
]

_NEWLINES = re.compile(r"\r?\n")


# ---------------------------------------------------------------------------
# CSV field escaping
# ---------------------------------------------------------------------------


def escape_csv_field(value: Any) -> str:
    """Collapse newlines to a space, double quotes, and quote when needed."""
    if value is None:
        return ""
    cleaned = _NEWLINES.sub(" ", str(value)).replace('"', '""')
    if "," in cleaned or '"' in cleaned or "\n" in cleaned:
        return f'"{cleaned}"'
    return cleaned


def unescape_csv_field(field: str) -> str:
    """Inverse of :func:`escape_csv_field` for values without embedded newlines."""
    if len(field) >= 2 and field.startswith('"') and field.endswith('"'):
        return field[1:-1].replace('""', '"')
    return field


def _fmt_int(value: int | None) -> str:
    return "" if value is None else str(value)


def _fmt_dt(value: datetime | None) -> str | None:
    """ISO timestamp with an explicit UTC offset. SQLite hands stored values back naive."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.isoformat()


# ---------------------------------------------------------------------------
# Submission field formatting
# ---------------------------------------------------------------------------


def format_speakers(speakers: Any) -> str:
    if not isinstance(speakers, list):
        return ""
    return "; ".join(str(s.get("name", "")) for s in speakers if isinstance(s, dict))


def format_categories(categories: Any) -> str:
    if not isinstance(categories, list):
        return ""
    parts = []
    for cat in categories:
        if not isinstance(cat, dict):
            continue
        items = ", ".join(str(i.get("name", "")) for i in cat.get("categoryItems") or [] if isinstance(i, dict))
        parts.append(f"{cat.get('name', '')}: {items}")
    return "; ".join(parts)


def format_question_answers(question_answers: Any) -> str:
    if not isinstance(question_answers, list):
        return ""
    return "; ".join(
        f"{qa.get('question', '')}: {qa.get('answer') or 'No answer'}"
        for qa in question_answers if isinstance(qa, dict)
    )


# ---------------------------------------------------------------------------
# Entity summaries
# ---------------------------------------------------------------------------


def speaker_summary(speaker: Speaker) -> dict[str, Any]:
    return {
        "id": speaker.id,
        "first_name": speaker.first_name,
        "last_name": speaker.last_name,
        "full_name": speaker.full_name,
        "bio": speaker.bio or "",
        "tag_line": speaker.tag_line or "",
        "profile_picture": speaker.profile_picture or "",
        "is_top_speaker": bool(speaker.is_top_speaker),
        "links": json_parse(speaker.links_json, default=[]),
        "sessions": json_parse(speaker.sessions_json, default=[]),
    }


def session_summary(talk: TalkSession, speakers: list[Speaker] | None = None) -> dict[str, Any]:
    return {
        "id": talk.id,
        "title": talk.title,
        "status": talk.status,
        "submission_status": submission_status(talk),
        "session_data": json_parse(talk.session_data),
        "title_score": talk.title_score,
        "title_justification": talk.title_justification,
        "description_score": talk.description_score,
        "description_justification": talk.description_justification,
        "key_takeaways_score": talk.key_takeaways_score,
        "key_takeaways_justification": talk.key_takeaways_justification,
        "given_before_score": talk.given_before_score,
        "given_before_justification": talk.given_before_justification,
        "evaluation_score_total": talk.evaluation_score_total,
        "created_at": _fmt_dt(talk.created_at),
        "completed_at": _fmt_dt(talk.completed_at),
        "speakers": [speaker_summary(s) for s in speakers or []],
    }


def session_row(talk: TalkSession) -> dict[str, Any]:
    """Scores only, without the stored payload or speakers. Used for listings."""
    return {
        "id": talk.id,
        "title": talk.title,
        "status": talk.status,
        "submission_status": submission_status(talk),
        "title_score": talk.title_score,
        "description_score": talk.description_score,
        "key_takeaways_score": talk.key_takeaways_score,
        "given_before_score": talk.given_before_score,
        "evaluation_score_total": talk.evaluation_score_total,
        "created_at": _fmt_dt(talk.created_at),
        "completed_at": _fmt_dt(talk.completed_at),
    }


def evaluation_summary(ev: SpeakerEvaluation) -> dict[str, Any]:
    return {
        "id": ev.id,
        "speaker_id": ev.speaker_id,
        "profile_url": ev.profile_url or "",
        "expertise_match": ev.expertise_match,
        "expertise_match_justification": ev.expertise_match_justification or "",
        "topics_relevance": ev.topics_relevance,
        "topics_relevance_justification": ev.topics_relevance_justification or "",
        "created_at": _fmt_dt(ev.created_at),
    }


# ---------------------------------------------------------------------------
# Exports
# ---------------------------------------------------------------------------


def csv_row(talk: TalkSession) -> list[str]:
    data = json_parse(talk.session_data)
    return [
        escape_csv_field(data.get("id", talk.id)),
        escape_csv_field(data.get("title", talk.title)),
        escape_csv_field(data.get("description", "")),
        escape_csv_field(format_speakers(data.get("speakers"))),
        escape_csv_field(format_categories(data.get("categories"))),
        escape_csv_field(format_question_answers(data.get("questionAnswers"))),
        escape_csv_field(talk.status),
        _fmt_int(talk.title_score),
        escape_csv_field(talk.title_justification),
        _fmt_int(talk.description_score),
        escape_csv_field(talk.description_justification),
        _fmt_int(talk.key_takeaways_score),
        escape_csv_field(talk.key_takeaways_justification),
        _fmt_int(talk.given_before_score),
        escape_csv_field(talk.given_before_justification),
        _fmt_int(talk.evaluation_score_total),
        escape_csv_field(_fmt_dt(talk.created_at)),
        escape_csv_field(_fmt_dt(talk.completed_at)),
    ]


def submission_status(talk: TalkSession) -> str | None:
    """The status the submission carries in the feed itself, e.g. ``Nominated``."""
    value = json_parse(talk.session_data).get("status")
    return str(value) if value is not None else None


def select_sessions(
    session: Session, status: str | None = None, submitted_as: str | None = None,
) -> list[store.SessionWithSpeakers]:
    rows = store.get_sessions_with_speakers(session, status=status)
    if submitted_as is None:
        return rows
    wanted = submitted_as.casefold()
    return [e for e in rows if (submission_status(e.session) or "").casefold() == wanted]


def render_csv(session: Session, status: str | None = None, submitted_as: str | None = None) -> str:
    rows = select_sessions(session, status=status, submitted_as=submitted_as)
    lines = [",".join(CSV_HEADERS)]
    lines.extend(",".join(csv_row(entry.session)) for entry in rows)
    return "\n".join(lines)


def json_record(talk: TalkSession, speakers: list[Speaker]) -> dict[str, Any]:
    return {
        "sessionData": json_parse(talk.session_data),
        "evaluation": json_parse(talk.evaluation_results, default=None),
        "evaluationScoreTotal": talk.evaluation_score_total,
        "status": talk.status,
        "speakers": {
            "ids": [s.id for s in speakers],
            "names": [f"{s.first_name} {s.last_name}".strip() for s in speakers],
            "taglines": [s.tag_line for s in speakers],
            "bios": [s.bio for s in speakers],
            "profilePictures": [s.profile_picture for s in speakers],
            "links": [json_parse(s.links_json, default=[]) for s in speakers],
        },
    }


def render_json(session: Session, status: str | None = None, submitted_as: str | None = None) -> str:
    rows = select_sessions(session, status=status, submitted_as=submitted_as)
    return json.dumps([json_record(e.session, e.speakers) for e in rows], indent=2, ensure_ascii=False)


def export_sessions(
    session: Session,
    path: str | Path,
    fmt: str = "csv",
    status: str | None = None,
    submitted_as: str | None = None,
) -> Path:
    if fmt == "csv":
        content = render_csv(session, status=status, submitted_as=submitted_as)
    elif fmt == "json":
        content = render_json(session, status=status, submitted_as=submitted_as)
    else:
        raise ValueError(f"Unknown export format: {fmt!r}")
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    log.info("Exported sessions as %s to %s", fmt, path)
    return path
