from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import TypeAdapter, ValidationError
from sqlalchemy.orm import Session

from cfpscout import store
from cfpscout.correlator import CorrelationResult, correlate_speakers
from cfpscout.schemas import GroupListFeed, SessionFeed, SessionSubmission, SpeakerRecord, WrappedFeed

log = logging.getLogger(__name__)


class InputMalformedError(Exception):
    """An import file could not be parsed or matched neither accepted shape."""


@dataclass
class SeedResult:
    sessions_imported: int
    speakers_imported: int
    correlation: CorrelationResult


_FEED_ADAPTER: TypeAdapter[WrappedFeed | GroupListFeed] = TypeAdapter(SessionFeed)
_SPEAKERS_ADAPTER: TypeAdapter[list[SpeakerRecord]] = TypeAdapter(list[SpeakerRecord])


def _tag_session_feed(raw: Any) -> dict[str, Any]:
    """Attach the union tag for whichever of the two accepted shapes *raw* has."""
    if isinstance(raw, dict) and isinstance(raw.get("sessions"), list):
        return {"kind": "wrapped", "sessions": raw["sessions"]}
    if isinstance(raw, list):
        return {"kind": "group_list", "groups": raw}
    raise InputMalformedError(
        "Invalid session feed: expected an array of groups or an object with a 'sessions' array"
    )


def normalize_session_feed(raw: Any) -> list[dict[str, Any]]:
    """Flatten either accepted session feed shape into a list of raw session dicts.

    The returned dicts are the submitted records as-is; each is checked to
    carry at least an ``id`` and a ``title``.
    """
    try:
        feed = _FEED_ADAPTER.validate_python(_tag_session_feed(raw))
    except ValidationError as exc:
        raise InputMalformedError(f"Invalid session feed: {exc}") from exc

    groups = feed.sessions if isinstance(feed, WrappedFeed) else feed.groups
    records = [record for group in groups for record in group.sessions]

    for idx, record in enumerate(records):
        try:
            SessionSubmission.model_validate(record)
        except ValidationError as exc:
            raise InputMalformedError(f"Invalid session record at position {idx}: {exc}") from exc
    return records


def normalize_speaker_feed(raw: Any) -> list[SpeakerRecord]:
    if not isinstance(raw, list):
        raise InputMalformedError("Invalid speaker feed: expected an array of speaker records")
    try:
        return _SPEAKERS_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        raise InputMalformedError(f"Invalid speaker feed: {exc}") from exc


def _load_json(path: str | Path) -> Any:
    path = Path(path)
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise InputMalformedError(f"Import file not found: {path}") from exc
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InputMalformedError(f"Import file {path} is not valid JSON: {exc}") from exc


def load_sessions_file(path: str | Path) -> list[dict[str, Any]]:
    return normalize_session_feed(_load_json(path))


def load_speakers_file(path: str | Path) -> list[SpeakerRecord]:
    return normalize_speaker_feed(_load_json(path))


def seed_database(
    session: Session,
    sessions_path: str | Path,
    speakers_path: str | Path | None = None,
) -> SeedResult:
    """Load both feeds, upsert every record, then correlate speakers to sessions.

    Both files are parsed before anything is written, so a malformed feed
    leaves the store untouched.
    """
    sessions = load_sessions_file(sessions_path)
    speakers = load_speakers_file(speakers_path) if speakers_path is not None else []

    log.info("Seeding %d sessions and %d speakers", len(sessions), len(speakers))
    for record in sessions:
        store.upsert_session(session, record)
    for speaker in speakers:
        store.upsert_speaker(session, speaker)

    correlation = correlate_speakers(session)
    return SeedResult(
        sessions_imported=len(sessions),
        speakers_imported=len(speakers),
        correlation=correlation,
    )
