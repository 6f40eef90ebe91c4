"""Builds the session/speaker junction from each session's embedded speaker references."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from cfpscout import store
from cfpscout.models import TalkSession
from cfpscout.utils import json_parse

log = logging.getLogger(__name__)


@dataclass
class CorrelationResult:
    sessions_scanned: int = 0
    links_created: int = 0
    links_existing: int = 0
    unknown_speaker_ids: list[str] = field(default_factory=list)


def _speaker_refs(talk: TalkSession) -> list[str]:
    data = json_parse(talk.session_data)
    refs = data.get("speakers") if isinstance(data, dict) else None
    if not isinstance(refs, list):
        return []
    ids: list[str] = []
    for ref in refs:
        if isinstance(ref, dict) and ref.get("id") is not None:
            ids.append(str(ref["id"]))
    return ids


def correlate_speakers(session: Session) -> CorrelationResult:
    """Link every stored session to the stored speakers it references.

    Idempotent: existing pairs are left alone. References to speaker ids that
    are not in the store are dropped without error and reported in the result.
    """
    talks = store.get_all_sessions(session)
    known = store.get_speaker_ids(session)

    result = CorrelationResult()
    for talk in talks:
        result.sessions_scanned += 1
        for speaker_id in _speaker_refs(talk):
            if speaker_id not in known:
                log.debug("Session %s references unknown speaker %s", talk.id, speaker_id)
                result.unknown_speaker_ids.append(speaker_id)
                continue
            if store.link_session_speaker(session, talk.id, speaker_id):
                result.links_created += 1
            else:
                result.links_existing += 1

    log.info(
        "Correlated %d sessions: %d new links, %d existing, %d unknown speaker references",
        result.sessions_scanned, result.links_created, result.links_existing,
        len(result.unknown_speaker_ids),
    )
    return result

