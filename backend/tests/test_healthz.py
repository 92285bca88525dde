import pytest
from fastapi.testclient import TestClient

import backend.api.health as health_api
from backend.main import app


@pytest.fixture
def client():
    return TestClient(app)


def test_healthz_always_ok(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json().get("status") == "ok"


def test_readyz_ok_on_fresh_database(client):
    resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json().get("status") == "ok"


def test_readyz_reports_missing_tables(client, monkeypatch):
    class FakeInspector:
        def has_table(self, name):
            return name != "generation_jobs"

    monkeypatch.setattr(health_api, "inspect", lambda engine: FakeInspector())

    resp = client.get("/readyz")
    assert resp.status_code == 503
    assert resp.json()["detail"] == "missing tables: generation_jobs"


def test_readyz_handles_db_down(client, monkeypatch):
    def boom():
        raise RuntimeError("db down")

    monkeypatch.setattr(health_api, "get_engine", boom)

    resp = client.get("/readyz")
    body = resp.json()
    assert resp.status_code == 503
    assert body.get("status") == "error"
    assert "database" in body.get("detail", "")


def test_health_db_lists_tables(client):
    data = client.get("/api/health/db").json()
    assert data["ok"] is True
    assert data["db"]["connected"] is True
    assert set(health_api.REQUIRED_TABLES) <= set(data["db"]["tables_present"])
    assert data["db"]["latency_ms"] is not None


def test_health_db_deterministic_with_now_param(client):
    data = client.get("/api/health/db", params={"now": "2026-03-01T10:00:00+00:00"}).json()
    assert data["computed_at"] == "2026-03-01T10:00:00+00:00"
    assert data["db"]["latency_ms"] is None


def test_health_db_when_disconnected(client, monkeypatch):
    monkeypatch.setattr(health_api, "check_connection", lambda: False)
    data = client.get("/api/health/db").json()
    assert data["ok"] is False
    assert data["db"]["tables_present"] == []
