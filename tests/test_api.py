"""
HTTP surface tests. The client is used without a context manager so the
startup hook (schema creation and scheduler) does not run; the engine's
database is already initialised by the fixtures.
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from gate_discovery.main import create_app
from gate_discovery.models.schemas import MergeSuggestion

from conftest import EVENT_ID, NOW, VENUE_CENTER, store_checkins


@pytest.fixture
def client(engine) -> TestClient:
    return TestClient(create_app(engine))


class TestEventsApi:

    def test_health(self, client):
        body = client.get("/api/health").json()
        assert body["status"] == "ok"
        assert body["dataAvailable"] is True

    def test_setup_and_read_thresholds(self, client):
        resp = client.post(f"/api/events/{EVENT_ID}/setup", json={
            "venue_type": "indoor", "overrides": {"promotion_sample_size": 40},
        })
        assert resp.status_code == 200
        assert resp.json()["duplicate_distance_meters"] == 15.0

        body = client.get(f"/api/events/{EVENT_ID}/thresholds").json()
        assert body["promotion_sample_size"] == 40
        assert body["version"] == 1

    def test_unknown_event_is_404(self, client):
        assert client.get("/api/events/nope/thresholds").status_code == 404
        assert client.post("/api/events/nope/recompute").status_code == 404

    def test_invalid_threshold_update_is_400_and_not_applied(self, client):
        client.post(f"/api/events/{EVENT_ID}/setup", json={"venue_type": "outdoor"})

        resp = client.put(f"/api/events/{EVENT_ID}/thresholds", json={"confidence_threshold": 3})
        assert resp.status_code == 400
        assert isinstance(resp.json()["detail"], list)
        assert client.get(f"/api/events/{EVENT_ID}/thresholds").json()["confidence_threshold"] == 0.85

        ok = client.put(f"/api/events/{EVENT_ID}/thresholds", json={"confidence_threshold": 0.9})
        assert ok.json()["confidence_threshold"] == 0.9
        assert ok.json()["version"] == 2

    def test_recompute_then_read_model(self, client, engine, db, repo, factory):
        client.post(f"/api/events/{EVENT_ID}/setup", json={"venue_type": "outdoor"})
        store_checkins(db, repo, factory.around(VENUE_CENTER, 20, radius_m=8, start=NOW - timedelta(hours=1)))
        engine.recompute(EVENT_ID, now=NOW)

        gates = client.get(f"/api/events/{EVENT_ID}/gates").json()
        assert len(gates) == 1
        assert gates[0]["status"] == "learning"

        bindings = client.get(f"/api/events/{EVENT_ID}/bindings", params={"status": "probation"}).json()
        assert [b["category"] for b in bindings] == ["GA"]
        assert client.get(f"/api/events/{EVENT_ID}/bindings", params={"status": "enforced"}).json() == []

        decisions = client.get(f"/api/events/{EVENT_ID}/decisions", params={"kind": "created"}).json()
        assert len(decisions) == 2
        assert all(d["primary_reason"] for d in decisions)

    def test_single_gate_lookup(self, client, engine, db, repo, factory):
        client.post(f"/api/events/{EVENT_ID}/setup", json={"venue_type": "outdoor"})
        store_checkins(db, repo, factory.around(VENUE_CENTER, 20, radius_m=8, start=NOW - timedelta(hours=1)))
        engine.recompute(EVENT_ID, now=NOW)
        [gate] = client.get(f"/api/events/{EVENT_ID}/gates").json()

        resp = client.get(f"/api/events/{EVENT_ID}/gates/{gate['id']}")
        assert resp.status_code == 200
        assert resp.json()["name"] == gate["name"]
        assert client.get(f"/api/events/{EVENT_ID}/gates/missing").status_code == 404

    def test_quality_report(self, client):
        assert client.get(f"/api/events/{EVENT_ID}/quality").status_code == 404

        client.post(f"/api/events/{EVENT_ID}/setup", json={"venue_type": "outdoor"})

        body = client.get(f"/api/events/{EVENT_ID}/quality").json()
        assert body["event_id"] == EVENT_ID
        assert body["recommendation"].startswith("Need at least 50 check-ins")
        assert body["discovery"]["strategy"] == "insufficient_data"
        assert body["thresholds_version"] == 1

    def test_manual_trigger_reports_cycle(self, client):
        client.post(f"/api/events/{EVENT_ID}/setup", json={"venue_type": "outdoor"})
        body = client.post(f"/api/events/{EVENT_ID}/recompute").json()
        assert body["status"] == "completed"

        report = client.post(f"/api/events/{EVENT_ID}/optimize").json()
        assert report["skipped"] is True


class TestMergeApi:

    def _seed_suggestion(self, engine) -> MergeSuggestion:
        suggestion = MergeSuggestion(
            event_id=EVENT_ID, primary_gate_id="g-a", secondary_gate_id="g-b",
            confidence_score=0.7, distance_meters=12.0, traffic_similarity=0.8, reasoning="close",
        )
        with engine.db.get_connection() as conn:
            engine.repository.upsert_merge_suggestions(conn, [suggestion])
        return suggestion

    def test_list_and_reject(self, client, engine):
        suggestion = self._seed_suggestion(engine)

        pending = client.get(f"/api/events/{EVENT_ID}/merge-suggestions", params={"status": "pending"}).json()
        assert [s["id"] for s in pending] == [suggestion.id]

        resp = client.post(f"/api/merge-suggestions/{suggestion.id}/reject")
        assert resp.status_code == 200
        assert resp.json()["suggestion"]["status"] == "rejected"

        assert client.post(f"/api/merge-suggestions/{suggestion.id}/reject").status_code == 404
        assert client.get(f"/api/events/{EVENT_ID}/merge-suggestions", params={"status": "pending"}).json() == []

    def test_approve_unknown_is_404(self, client):
        assert client.post("/api/merge-suggestions/missing/approve").status_code == 404

    def test_bad_filter_value_is_422(self, client):
        resp = client.get(f"/api/events/{EVENT_ID}/merge-suggestions", params={"status": "maybe"})
        assert resp.status_code == 422
