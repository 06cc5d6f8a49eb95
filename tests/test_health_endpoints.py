from fastapi.testclient import TestClient

from leadsms.main import app


def test_ping():
    resp = TestClient(app).get("/ping")
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["pong"] is True
    assert body["time"].endswith("Z")


def test_health_reports_memory_datastore():
    resp = TestClient(app).get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["datastore"] == "memory"
    assert body["signing"] is False
    assert body["owner_channel"] is False
