"""
HTTP API Tests — FastAPI surface over the session scheduler.
"""

import sys
import os
import time
import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import server


@pytest.fixture
def client():
    # no lifespan: sessions only advance through explicit /tick calls
    yield TestClient(server.app)
    server.scheduler.stop_all()


def create(client, **payload):
    resp = client.post("/sessions", json=payload)
    assert resp.status_code == 201
    return resp.json()["id"]


class TestSessionsAPI:

    def test_create_returns_snapshot(self, client):
        resp = client.post("/sessions", json={"seed": 3, "npc": {"mode": "technician"}})
        assert resp.status_code == 201
        body = resp.json()
        assert body["running"] is True
        assert body["npcs"][0]["mode"] == "technician"

    def test_create_without_body_uses_defaults(self, client):
        resp = client.post("/sessions")
        assert resp.status_code == 201
        assert resp.json()["paddle1"]["controller"] == "pid"

    def test_bad_seed_is_rejected(self, client):
        assert client.post("/sessions", json={"seed": "abc"}).status_code == 422

    def test_unknown_session_is_404(self, client):
        assert client.get("/sessions/missing").status_code == 404
        assert client.post("/sessions/missing/tick").status_code == 404
        assert client.delete("/sessions/missing").status_code == 404
        assert client.post("/sessions/missing/speed-boost").status_code == 404

    def test_manual_tick_with_inputs(self, client):
        sid = create(client, seed=1)
        x0 = client.get(f"/sessions/{sid}").json()["paddle2"]["x"]
        resp = client.post(f"/sessions/{sid}/tick", json={"inputs": {"2": {"down": True}}})
        assert resp.status_code == 200
        body = resp.json()
        assert isinstance(body["events"], list)
        assert body["state"]["tick"] == 1
        assert body["state"]["paddle2"]["x"] == pytest.approx(x0 + 8.0)

    def test_held_input(self, client):
        sid = create(client, seed=1)
        resp = client.post(f"/sessions/{sid}/input", json={"player": 2, "up": True})
        assert resp.json() == {"player": 2, "up": True, "down": False}
        assert client.post(f"/sessions/{sid}/input", json={"player": 1, "up": True}).status_code == 409

    def test_speed_boost(self, client):
        sid = create(client, seed=1)
        resp = client.post(f"/sessions/{sid}/speed-boost")
        assert resp.json()["speed_multiplier"] == pytest.approx(1.15)

    def test_patch_npc(self, client):
        sid = create(client, seed=1)
        resp = client.patch(f"/sessions/{sid}/npc/1", json={"mode": "heuristic", "difficulty": "Easy"})
        assert resp.status_code == 200
        assert resp.json()["npc"] == {"mode": "heuristic", "difficulty": "Easy", "enabled": True}
        resp = client.patch(f"/sessions/{sid}/npc/1", json={"enabled": False})
        assert resp.json()["npc"] is None

    def test_patch_npc_bad_player(self, client):
        sid = create(client, seed=1)
        assert client.patch(f"/sessions/{sid}/npc/3", json={}).status_code == 422

    def test_debug_query(self, client):
        sid = create(client, seed=1)
        client.post(f"/sessions/{sid}/tick")
        body = client.get(f"/sessions/{sid}", params={"debug": True}).json()
        assert body["debug"]["1"]["algorithm"] == "pid"

    def test_stop_and_stop_all(self, client):
        sid = create(client, seed=1)
        create(client, seed=2)
        assert client.get("/sessions").json()["active"] == 2
        assert client.delete(f"/sessions/{sid}").json()["running"] is False
        assert client.get(f"/sessions/{sid}").status_code == 404
        assert client.delete("/sessions").json() == {"stopped": 1}
        assert client.get("/sessions").json()["total"] == 0


class TestLifespan:

    def test_background_loop_advances_sessions(self):
        with TestClient(server.app) as client:
            sid = create(client, seed=1)
            deadline = time.time() + 5.0
            tick = 0
            while time.time() < deadline and tick == 0:
                time.sleep(0.05)
                tick = client.get(f"/sessions/{sid}").json()["tick"]
            assert tick > 0
        assert len(server.scheduler) == 0
