"""Tests for the computed router.

Uses FastAPI TestClient against a file database seeded through the engine,
with one poisoned task already dead-lettered.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import build_lookup_chain
from tablespine.api.app import create_app
from tablespine.engine import ComputedEngine
from tablespine.outbox import ComputedUpdateWorker


@pytest.fixture()
def api_settings(settings, file_db):
    return settings.model_copy(
        update={"database_url": file_db, "sync_complexity_threshold": 0, "sync_max_level": -1}
    )


@pytest.fixture()
def seeded(api_settings):
    """Lookup chain plus one dead-lettered task. Yields (engine, chain, dispatch)."""
    engine = ComputedEngine.open(api_settings.database_url, api_settings)
    chain = build_lookup_chain(engine)
    _ids, dispatch = engine.insert_records(chain.t1, [{chain.count: 4}]).unpack()
    engine.conn.execute("UPDATE computed_update_outbox SET steps = '{broken'")
    ComputedUpdateWorker(engine.conn, api_settings, "w-api", engine.updater).drain()
    yield engine, chain, dispatch
    engine.close()


@pytest.fixture()
def client(api_settings, seeded):
    with TestClient(create_app(settings=api_settings), raise_server_exceptions=False) as test_client:
        yield test_client


# ── Explain ─────────────────────────────────────────────────────


class TestExplain:
    def test_update_impact(self, client, seeded):
        _engine, chain, _dispatch = seeded
        resp = client.post(
            "/computed/explain",
            json={"changeType": "update", "tableId": chain.t1, "recordIds": ["recX"], "fieldIds": [chain.count]},
        )
        assert resp.status_code == 200
        impact = resp.json()["computedImpact"]
        assert impact["affectedFields"] == [chain.lookup2, chain.lookup3]
        assert impact["affectedTables"] == [chain.t2, chain.t3]
        assert impact["stepCount"] == 2
        assert impact["levels"] == 2
        assert impact["warnings"] == []

    def test_no_impact(self, client, seeded):
        _engine, chain, _dispatch = seeded
        resp = client.post(
            "/computed/explain",
            json={"changeType": "update", "tableId": chain.t3, "recordIds": ["recX"], "fieldIds": [chain.lookup3]},
        )
        assert resp.status_code == 200
        assert resp.json()["computedImpact"] is None

    def test_unknown_table(self, client):
        resp = client.post("/computed/explain", json={"changeType": "update", "tableId": "tblMissing"})
        assert resp.status_code == 404
        body = resp.json()
        assert body["code"] == "NOT_FOUND"
        assert "tblMissing" in body["detail"]

    def test_invalid_change_type(self, client, seeded):
        _engine, chain, _dispatch = seeded
        resp = client.post("/computed/explain", json={"changeType": "rename", "tableId": chain.t1})
        assert resp.status_code == 422


# ── Dead letters ────────────────────────────────────────────────


class TestDeadLetters:
    def test_list(self, client, seeded):
        _engine, _chain, dispatch = seeded
        resp = client.get("/computed/dead-letters")
        assert resp.status_code == 200
        body = resp.json()
        assert body["page"]["total"] == 1
        assert body["page"]["has_more"] is False
        assert [d["id"] for d in body["data"]] == dispatch.task_ids
        assert body["data"][0]["attempts"] == 1
        assert "PlanDecodeError" in body["data"][0]["last_error"]

    def test_list_filtered_by_run(self, client, seeded):
        _engine, _chain, dispatch = seeded
        assert client.get("/computed/dead-letters", params={"run_id": dispatch.run_id}).json()["page"]["total"] == 1
        assert client.get("/computed/dead-letters", params={"run_id": "runOther"}).json()["data"] == []

    def test_limit_validated(self, client):
        assert client.get("/computed/dead-letters", params={"limit": 0}).status_code == 422

    def test_get(self, client, seeded):
        _engine, _chain, dispatch = seeded
        resp = client.get(f"/computed/dead-letters/{dispatch.task_ids[0]}")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["steps"] == "{broken"
        assert data["run_id"] == dispatch.run_id
        assert "Traceback" in data["trace_data"]

    def test_get_missing(self, client):
        resp = client.get("/computed/dead-letters/tskMissing")
        assert resp.status_code == 404
        assert resp.json()["code"] == "NOT_FOUND"

    def test_requeue(self, client, seeded):
        engine, _chain, dispatch = seeded
        resp = client.post(f"/computed/dead-letters/{dispatch.task_ids[0]}/requeue")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["requeued"] is True
        assert data["task_id"] != dispatch.task_ids[0]

        task = engine.outbox.get(data["task_id"])
        assert task.attempts == 0
        assert client.get("/computed/dead-letters").json()["page"]["total"] == 0

    def test_requeue_missing(self, client):
        assert client.post("/computed/dead-letters/tskMissing/requeue").status_code == 404


# ── Runs / outbox ───────────────────────────────────────────────


class TestRunsAndStats:
    def test_progress_of_failed_run(self, client, seeded):
        _engine, _chain, dispatch = seeded
        resp = client.get(f"/computed/runs/{dispatch.run_id}/progress")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["dead_letters"] == 1
        assert data["total_steps"] == 2
        assert data["completed_steps"] == 0
        assert data["is_complete"] is True

    def test_progress_unknown_run(self, client):
        assert client.get("/computed/runs/runMissing/progress").status_code == 404

    def test_outbox_stats(self, client):
        resp = client.get("/computed/outbox/stats")
        assert resp.status_code == 200
        assert resp.json()["data"] == {"pending": 0, "processing": 0, "done": 0, "parked": 0, "dead_letter": 1}
