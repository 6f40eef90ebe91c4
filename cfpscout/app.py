from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, HTTPException, Query
from sqlalchemy.orm import Session

from cfpscout import store
from cfpscout.db import get_session, init_db
from cfpscout.models import SessionStatus
from cfpscout.reporting import evaluation_summary, select_sessions, session_summary, speaker_summary
from cfpscout.schemas import ResetOut, SessionOut, SpeakerEvaluationOut, SpeakerOut, StatsOut

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="cfpscout",
    version="0.1.0",
    description=(
        "Read access to CFP session scores and speaker assessments. "
        "All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Sessions", "description": "Submitted sessions with their scores and speakers."},
        {"name": "Speakers", "description": "Speaker profiles and assessment history."},
        {"name": "Stats", "description": "Aggregate counts and average scores."},
        {"name": "Admin", "description": "Administrative operations."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _get_or_404(value, label: str = "Entity"):
    if value is None:
        raise HTTPException(404, f"{label} not found")
    return value


# ---------------------------------------------------------------------------
# Routes: Sessions
# ---------------------------------------------------------------------------


@app.get("/api/sessions", response_model=list[SessionOut],
         tags=["Sessions"], summary="List sessions with speakers, optionally filtered by status")
async def list_sessions(
    status: SessionStatus | None = Query(None, description="new or ready"),
    submission_status: str | None = Query(None, description="Status carried by the submission, e.g. Nominated"),
    session: Session = Depends(db_session),
):
    rows = select_sessions(session, status=status.value if status else None, submitted_as=submission_status)
    return [session_summary(r.session, r.speakers) for r in rows]


@app.get("/api/sessions/{session_id}", response_model=SessionOut,
         tags=["Sessions"], summary="Get one session with its speakers and scores")
async def get_session_detail(session_id: str, session: Session = Depends(db_session)):
    talk = _get_or_404(store.get_session_record(session, session_id), "Session")
    return session_summary(talk, store.get_related_speakers(session, session_id))


@app.post("/api/sessions/reset", response_model=ResetOut,
          tags=["Admin"], summary="Move every processed session back to unprocessed")
async def reset_sessions(session: Session = Depends(db_session)):
    return {"reset": store.bulk_reset_processed_sessions(session)}


# ---------------------------------------------------------------------------
# Routes: Speakers
# ---------------------------------------------------------------------------


@app.get("/api/speakers", response_model=list[SpeakerOut],
         tags=["Speakers"], summary="List every speaker with the sessions they submitted")
async def list_speakers(session: Session = Depends(db_session)):
    return [speaker_summary(s) for s in store.get_all_speakers(session)]


@app.get("/api/speakers/{speaker_id}/evaluation",
         response_model=SpeakerEvaluationOut | list[SpeakerEvaluationOut],
         tags=["Speakers"], summary="Current speaker evaluation, or the full history newest first")
async def get_speaker_evaluation(
    speaker_id: str,
    history: bool = Query(False, description="Return every evaluation instead of the latest"),
    session: Session = Depends(db_session),
):
    found = _get_or_404(store.get_speaker_evaluation(session, speaker_id, latest=not history), "Speaker evaluation")
    if history:
        return [evaluation_summary(ev) for ev in found]
    return evaluation_summary(found)


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut,
         tags=["Stats"], summary="Session, speaker and evaluation counts and averages")
async def get_stats(session: Session = Depends(db_session)):
    return store.aggregate_stats(session)


def main():
    import uvicorn
    uvicorn.run("cfpscout.app:app", host="127.0.0.1", port=8001)
