import runpy
from pathlib import Path

import pytest

import consultancy
from consultancy import create_app

from .conftest import build_test_app


def test_security_headers_are_set(client):
    response = client.get("/api/pillars")
    assert response.status_code == 200
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
    assert response.headers["Cache-Control"] == "no-store"
    assert "Strict-Transport-Security" not in response.headers
    assert int(response.headers["RateLimit-Remaining"]) >= 0


def test_hsts_is_sent_over_https(client):
    response = client.get("/api/pillars", base_url="https://localhost")
    assert response.headers["Strict-Transport-Security"].startswith("max-age=31536000")


def test_request_id_is_echoed_or_generated(client):
    echoed = client.get("/api/health", headers={"X-Request-ID": "req-12345678"})
    assert echoed.headers["X-Request-ID"] == "req-12345678"

    generated = client.get("/api/health", headers={"X-Request-ID": "bad id with spaces"})
    assert generated.headers["X-Request-ID"] != "bad id with spaces"
    assert len(generated.headers["X-Request-ID"]) == 32


def test_health_and_ready_report_database_and_seed(client):
    health = client.get("/api/health")
    assert health.status_code == 200
    body = health.get_json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["status"] == "connected"
    assert body["environment"] == "test"

    ready = client.get("/api/ready")
    assert ready.status_code == 200
    assert ready.get_json()["status"] == "ready"
    assert all(ready.get_json()["checks"].values())


def test_unknown_route_and_wrong_method_use_error_envelope(client):
    missing = client.get("/api/does-not-exist")
    assert missing.status_code == 404
    assert missing.get_json() == {"success": False, "message": "Route not found: /api/does-not-exist"}

    wrong_method = client.delete("/api/pillars")
    assert wrong_method.status_code == 405
    assert wrong_method.get_json()["message"] == "Method not allowed"


def test_malformed_json_body_is_rejected(client):
    response = client.post("/api/auth/login", data="{broken", content_type="application/json")
    assert response.status_code == 422
    assert response.get_json()["success"] is False


def test_api_rate_limit_exempts_health_and_webhooks(tmp_path, monkeypatch):
    app = build_test_app(tmp_path, monkeypatch, {"RATE_LIMIT_MAX": 2})
    client = app.test_client()

    assert client.get("/api/pillars").status_code == 200
    assert client.get("/api/pillars").status_code == 200
    limited = client.get("/api/pillars")
    assert limited.status_code == 429
    assert limited.get_json()["message"] == "Too many requests, please try again later"
    assert int(limited.headers["Retry-After"]) > 0
    assert limited.headers["RateLimit-Limit"] == "2"

    assert client.get("/api/health").status_code == 200
    assert client.post("/api/webhooks/generic/suitedash", json={"event": "ping"}).status_code == 200


def test_rate_limit_can_be_disabled(tmp_path, monkeypatch):
    app = build_test_app(tmp_path, monkeypatch, {"RATE_LIMIT_MAX": 1, "RATE_LIMIT_ENABLED": False})
    client = app.test_client()
    assert all(client.get("/api/pillars").status_code == 200 for _ in range(3))


def test_cors_allows_only_configured_origins(client):
    allowed = client.options(
        "/api/pillars",
        headers={"Origin": "http://localhost:5173", "Access-Control-Request-Method": "GET"},
    )
    assert allowed.headers["Access-Control-Allow-Origin"] == "http://localhost:5173"
    assert allowed.headers["Access-Control-Allow-Credentials"] == "true"

    denied = client.get("/api/pillars", headers={"Origin": "https://evil.example"})
    assert "Access-Control-Allow-Origin" not in denied.headers


def test_production_requires_secrets(tmp_path):
    with pytest.raises(RuntimeError, match="Missing required environment variables"):
        create_app({
            "APP_ENV": "production",
            "DATABASE_URL_CONFIGURED": False,
            "JWT_SECRET": "",
            "JWT_REFRESH_SECRET": "",
            "SECRET_KEY": "",
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'prod.db'}",
            "UPLOAD_FOLDER": str(tmp_path / "uploads"),
        })


def test_run_script_loads_outside_the_package(monkeypatch):
    built = object()
    monkeypatch.setattr("consultancy.create_app", lambda: built)
    namespace = runpy.run_path(str(Path(consultancy.__file__).with_name("run.py")), run_name="consultancy_run_script")
    assert namespace["app"] is built
