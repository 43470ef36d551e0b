from fastapi.testclient import TestClient

import backend.api.health as health_api
from backend.main import app

client = TestClient(app)


def test_healthz_always_ok():
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json().get("status") == "ok"


def test_readyz_ok_against_test_database():
    resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json().get("status") == "ok"


def test_readyz_reports_missing_tables(monkeypatch):
    class FakeInspector:
        def has_table(self, name):
            return name != "purchases"

    monkeypatch.setattr(health_api, "inspect", lambda engine: FakeInspector())

    resp = client.get("/readyz")
    assert resp.status_code == 503
    assert "purchases" in resp.json().get("detail", "")


def test_readyz_handles_db_down(monkeypatch):
    def boom():
        raise RuntimeError("db down")

    monkeypatch.setattr(health_api, "get_engine", boom)

    resp = client.get("/readyz")
    body = resp.json()
    assert resp.status_code == 503
    assert body.get("status") == "error"
    assert "database" in body.get("detail", "")


def test_metrics_endpoint_exports_prometheus_text():
    client.get("/healthz")
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "# TYPE http_requests_total counter" in resp.text
    assert 'path="/healthz"' in resp.text


def test_metrics_collapse_payment_ids_and_list_gauges():
    from backend.core.metrics import normalize_path

    assert normalize_path("/v1/admin/payments/pi_3Nabc123") == "/v1/admin/payments/:id"
    assert normalize_path("/v1/users/42/") == "/v1/users/:id"

    resp = client.get("/metrics")
    assert "# TYPE entitlements_revoked_total counter" in resp.text
    assert "# TYPE ws_active_connections gauge" in resp.text
