from __future__ import annotations

import asyncio
import json
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from cfpscout import store
from cfpscout.models import Base, SessionStatus
from cfpscout.pipeline import SessionProcessor, SpeakerAssessor, process_unprocessed_sessions, write_results
from cfpscout.schemas import SessionEvaluationResult
from cfpscout.store import PersistenceError

from conftest import FakeEvaluator, speaker, submission


@pytest.fixture()
def file_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'pipeline.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


def _seed(factory, count: int = 3) -> list[str]:
    ids = [f"s{i}" for i in range(count)]
    with factory() as db:
        store.upsert_speaker(db, speaker("p1", "Ada", "Lovelace"))
        for sid in ids:
            store.upsert_session(db, submission(sid, f"Talk {sid}", speakers=[("p1", "Ada")]))
            store.link_session_speaker(db, sid, "p1")
    return ids


@pytest.mark.asyncio
async def test_processes_every_unprocessed_session(file_factory):
    ids = _seed(file_factory)
    summary = await process_unprocessed_sessions(
        FakeEvaluator(), session_factory=file_factory, concurrency=2, speaker_concurrency=2,
    )
    assert [r.session_id for r in summary.processed] == ids
    assert summary.failed == []
    assert summary.skipped == 0
    assert not summary.interrupted
    with file_factory() as db:
        assert store.get_unprocessed_sessions(db) == []
        assert len(store.get_speaker_evaluation(db, "p1", latest=False)) == 3


@pytest.mark.asyncio
async def test_second_run_has_nothing_to_do(file_factory):
    _seed(file_factory, 2)
    await process_unprocessed_sessions(FakeEvaluator(), session_factory=file_factory)
    evaluator = FakeEvaluator()
    summary = await process_unprocessed_sessions(evaluator, session_factory=file_factory)
    assert summary.queued == 0
    assert evaluator.calls == []


@pytest.mark.asyncio
async def test_limit(file_factory):
    _seed(file_factory, 3)
    summary = await process_unprocessed_sessions(FakeEvaluator(), session_factory=file_factory, limit=2)
    assert [r.session_id for r in summary.processed] == ["s0", "s1"]
    with file_factory() as db:
        assert [t.id for t in store.get_unprocessed_sessions(db)] == ["s2"]


@pytest.mark.asyncio
async def test_unit_failure_leaves_session_new(file_factory):
    _seed(file_factory, 2)
    with file_factory() as db:
        broken = store.get_session_record(db, "s0")
        broken.session_data = json.dumps({"id": "s0"})
        db.commit()

    summary = await process_unprocessed_sessions(FakeEvaluator(), session_factory=file_factory)

    assert [r.session_id for r in summary.processed] == ["s1"]
    assert [f.session_id for f in summary.failed] == ["s0"]
    with file_factory() as db:
        assert store.get_session_record(db, "s0").status == SessionStatus.NEW.value


@pytest.mark.asyncio
async def test_persistence_failure_stops_scheduling_and_is_reraised(file_factory):
    _seed(file_factory, 3)
    evaluator = FakeEvaluator()
    with patch(
        "cfpscout.workflow.store.record_session_evaluation",
        side_effect=PersistenceError("database is locked"),
    ):
        with pytest.raises(PersistenceError, match="locked"):
            await process_unprocessed_sessions(evaluator, session_factory=file_factory, concurrency=1)
    assert len(evaluator.calls_for(SessionEvaluationResult)) == 1


@pytest.mark.asyncio
async def test_request_drain_stops_pending_units(file_factory):
    _seed(file_factory, 4)
    processor = SessionProcessor(FakeEvaluator(delay=0.05), session_factory=file_factory, concurrency=1)

    async def _interrupt():
        await asyncio.sleep(0.02)
        processor.request_drain()

    summary, _ = await asyncio.gather(processor.run(), _interrupt())

    assert summary.interrupted
    assert [r.session_id for r in summary.processed] == ["s0"]
    assert summary.skipped == 3
    with file_factory() as db:
        assert [t.id for t in store.get_unprocessed_sessions(db)] == ["s1", "s2", "s3"]


@pytest.mark.asyncio
async def test_speaker_assessor_appends_for_every_speaker(file_factory):
    _seed(file_factory, 1)
    result = await SpeakerAssessor(FakeEvaluator(), session_factory=file_factory).run()
    assert [a.speaker_id for a in result.assessments] == ["p1"]
    with file_factory() as db:
        assert store.get_speaker_evaluation(db, "p1").expertise_match == 3


def test_write_results(tmp_path):
    path = write_results(tmp_path / "out" / "processed-sessions.json", {"processedCount": 0})
    assert json.loads(path.read_text(encoding="utf-8")) == {"processedCount": 0}
