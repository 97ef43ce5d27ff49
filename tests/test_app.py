import json
import logging

from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from workshop_tracker import config
from workshop_tracker.db import make_engine
from workshop_tracker.logging_config import JSONFormatter
from workshop_tracker.main import create_app
from workshop_tracker.seed import DEFAULT_STAGES


def test_startup_seeds_empty_store():
    settings = config.get_settings()._replace(seed_defaults=True, admin_password="letmein", cors_origins="http://localhost:5173")
    engine = make_engine("sqlite://", poolclass=StaticPool)
    app = create_app(settings, engine=engine)
    try:
        with TestClient(app) as client:
            r = client.post("/api/auth/login", json={"username": "admin", "password": "letmein"})
            assert r.status_code == 200
            headers = {"Authorization": f"Bearer {r.json()['token']}"}
            titles = [s["title"] for s in client.get("/api/stages", headers=headers).json()]
            assert titles == list(DEFAULT_STAGES)

            r = client.get("/health", headers={"Origin": "http://localhost:5173"})
            assert r.headers["access-control-allow-origin"] == "http://localhost:5173"
    finally:
        engine.dispose()


def test_expired_token(client, admin):
    from workshop_tracker.auth import create_access_token

    token = create_access_token(admin.id, admin.username, "admin", admin.name, expires_delta=-10)
    r = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 401
    assert r.json() == {"error": "Token expired"}


def test_token_signed_with_other_secret(client, admin):
    from workshop_tracker.auth import create_access_token

    config.override_settings(jwt_secret="someone-else")
    token = create_access_token(admin.id, admin.username, "admin", admin.name)
    config.override_settings(jwt_secret="test-secret")
    assert client.get("/auth/me", headers={"Authorization": f"Bearer {token}"}).status_code == 401


def test_json_log_format():
    record = logging.LogRecord("workshop_tracker.transitions", logging.INFO, __file__, 1, "order %s moved", (7,), None)
    record.order_id = 7
    entry = json.loads(JSONFormatter().format(record))
    assert entry["message"] == "order 7 moved"
    assert entry["order_id"] == 7
    assert entry["level"] == "INFO"
    assert "stage_id" not in entry
