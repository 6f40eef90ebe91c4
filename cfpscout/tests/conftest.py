from __future__ import annotations

import asyncio
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from cfpscout.models import Base
from cfpscout.schemas import SessionEvaluationResult, SpeakerAssessmentResult

# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(session_factory):
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.close()


# ---------------------------------------------------------------------------
# Feed records
# ---------------------------------------------------------------------------


def submission(
    session_id: str,
    title: str = "Signals in Practice",
    *,
    speakers: list[tuple[str, str]] | None = None,
    takeaways: str | None = "Ship faster",
    given_before: list[str] | None = None,
) -> dict[str, Any]:
    question_answers = []
    if takeaways is not None:
        question_answers.append({"question": "Key Takeaways", "answer": takeaways, "questionType": "Text"})
    categories = []
    if given_before is not None:
        categories.append({
            "name": "Have you given this talk before?",
            "categoryItems": [{"id": i, "name": name} for i, name in enumerate(given_before)],
        })
    return {
        "id": session_id,
        "title": title,
        "description": f"All about {title}",
        "questionAnswers": question_answers,
        "categories": categories,
        "speakers": [{"id": sid, "name": name} for sid, name in speakers or []],
        "status": "Nominated",
    }


def speaker(speaker_id: str, first: str, last: str, *, sessionize: bool = True) -> dict[str, Any]:
    links = [{"title": "Blog", "url": f"https://{first.lower()}.dev", "linkType": "Blog"}]
    if sessionize:
        links.append({"title": "Sessionize", "url": f"https://sessionize.com/{first.lower()}", "linkType": "Sessionize"})
    return {
        "id": speaker_id,
        "firstName": first,
        "lastName": last,
        "fullName": f"{first} {last}",
        "bio": f"{first} writes JavaScript.",
        "tagLine": "Developer",
        "profilePicture": f"https://img.example/{speaker_id}.jpg",
        "isTopSpeaker": False,
        "links": links,
        "sessions": [],
        "questionAnswers": [],
        "categories": [],
    }


@pytest.fixture()
def make_submission():
    return submission


@pytest.fixture()
def make_speaker():
    return speaker


# ---------------------------------------------------------------------------
# Evaluator double
# ---------------------------------------------------------------------------


def session_result(score: int = 4) -> SessionEvaluationResult:
    crit = {"score": score, "justification": f"scored {score}"}
    return SessionEvaluationResult.model_validate(
        {"title": crit, "description": crit, "keyTakeaways": crit, "givenBefore": crit}
    )


def speaker_result(expertise: int = 3, topics: int = 3) -> SpeakerAssessmentResult:
    return SpeakerAssessmentResult.model_validate({
        "expertiseMatch": expertise,
        "expertiseMatchJustification": "strong match",
        "topicsRelevance": topics,
        "topicsRelevanceJustification": "relevant topics",
    })


class FakeEvaluator:
    """Records every call. ``fail_when(prompt)`` decides which calls raise."""

    def __init__(self, *, delay: float = 0.0, fail_when=None, session_score: int = 4):
        self.delay = delay
        self.fail_when = fail_when or (lambda prompt: False)
        self.session_score = session_score
        self.calls: list[tuple[str, str, type]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def evaluate(self, system, prompt, schema):
        self.calls.append((system, prompt, schema))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_when(prompt):
                raise RuntimeError("model unavailable")
        finally:
            self.in_flight -= 1
        if schema is SessionEvaluationResult:
            return session_result(self.session_score)
        return speaker_result()

    def calls_for(self, schema) -> list[tuple[str, str, type]]:
        return [c for c in self.calls if c[2] is schema]


@pytest.fixture()
def fake_evaluator():
    return FakeEvaluator
