"""HTTP-level tests for the read API, using an in-memory database."""
from __future__ import annotations

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from cfpscout import store

from conftest import session_result, speaker, speaker_result, submission


@pytest.fixture()
def client(session_factory):
    from cfpscout.app import app, db_session

    def override_db_session():
        session = session_factory()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    with patch("cfpscout.app.init_db"):
        with TestClient(app, raise_server_exceptions=True) as c:
            yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def seeded(client, session):
    store.upsert_session(session, submission("s1", "Signals", speakers=[("p1", "Ada")]))
    store.upsert_session(session, submission("s2", "Islands"))
    store.upsert_speaker(session, speaker("p1", "Ada", "Lovelace"))
    store.link_session_speaker(session, "s1", "p1")
    store.record_session_evaluation(session, "s1", session_result(3))
    store.append_speaker_evaluation(session, "p1", "https://sessionize.com/ada", speaker_result(1, 1))
    store.append_speaker_evaluation(session, "p1", "https://sessionize.com/ada", speaker_result(3, 2))
    return client


class TestSessions:
    def test_list_all(self, seeded):
        resp = seeded.get("/api/sessions")
        assert resp.status_code == 200
        data = resp.json()
        assert [s["id"] for s in data] == ["s1", "s2"]
        assert data[0]["speakers"][0]["full_name"] == "Ada Lovelace"
        assert data[1]["speakers"] == []

    def test_filter_by_status(self, seeded):
        resp = seeded.get("/api/sessions", params={"status": "ready"})
        assert [s["id"] for s in resp.json()] == ["s1"]

    def test_filter_by_submission_status(self, seeded, session):
        withdrawn = submission("s3", "Withdrawn")
        withdrawn["status"] = "Withdrawn"
        store.upsert_session(session, withdrawn)
        resp = seeded.get("/api/sessions", params={"submission_status": "Withdrawn"})
        assert [s["id"] for s in resp.json()] == ["s3"]
        assert resp.json()[0]["submission_status"] == "Withdrawn"

    def test_invalid_status(self, seeded):
        assert seeded.get("/api/sessions", params={"status": "done"}).status_code == 422

    def test_detail(self, seeded):
        resp = seeded.get("/api/sessions/s1")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ready"
        assert body["evaluation_score_total"] == 12
        assert body["session_data"]["title"] == "Signals"
        assert body["completed_at"] is not None

    def test_unknown_session_404(self, seeded):
        assert seeded.get("/api/sessions/missing").status_code == 404

    def test_reset(self, seeded):
        resp = seeded.post("/api/sessions/reset")
        assert resp.json() == {"reset": 1}
        assert seeded.get("/api/sessions/s1").json()["status"] == "new"


class TestSpeakers:
    def test_list_speakers(self, seeded, session):
        store.upsert_speaker(session, speaker("p2", "Grace", "Hopper"))
        resp = seeded.get("/api/speakers")
        assert resp.status_code == 200
        data = resp.json()
        assert [s["full_name"] for s in data] == ["Ada Lovelace", "Grace Hopper"]
        assert data[0]["links"][1]["linkType"] == "Sessionize"
        assert data[0]["is_top_speaker"] is False

    def test_list_speakers_empty(self, client):
        assert client.get("/api/speakers").json() == []


class TestSpeakerEvaluation:
    def test_latest(self, seeded):
        resp = seeded.get("/api/speakers/p1/evaluation")
        assert resp.status_code == 200
        assert resp.json()["expertise_match"] == 3

    def test_history(self, seeded):
        resp = seeded.get("/api/speakers/p1/evaluation", params={"history": "true"})
        assert [ev["expertise_match"] for ev in resp.json()] == [3, 1]

    def test_unknown_speaker_404(self, seeded):
        assert seeded.get("/api/speakers/nobody/evaluation").status_code == 404


class TestStats:
    def test_stats(self, seeded):
        resp = seeded.get("/api/stats")
        assert resp.status_code == 200
        body = resp.json()
        assert body["sessions"]["total"] == 2
        assert body["sessions"]["processed"] == 1
        assert body["sessions"]["average_total_score"] == 12.0
        assert body["speakers"]["with_sessions"] == 1
        assert body["speaker_evaluations"]["rows"] == 2
        assert body["speaker_evaluations"]["average_expertise_match"] == 3.0

    def test_empty_stats(self, client):
        body = client.get("/api/stats").json()
        assert body["sessions"]["average_total_score"] is None
        assert body["speaker_evaluations"]["evaluated_speakers"] == 0
