from __future__ import annotations

import io
import json
import os
import zipfile
from pathlib import Path

from fastapi.testclient import TestClient

import apihub.db.session as db_session_module
from apihub.api.app import create_app
from apihub.core.config import get_settings
from apihub.core.logging import get_log_level_handle
from apihub.db.init_db import initialize_database
from apihub.ws.runtime import reset_ws_runtime

HEADERS = {"X-User-Id": "alice"}


def setup_env(tmp_path: Path, **overrides: str):
    for key in [key for key in os.environ if key.startswith("APIHUB_")]:
        del os.environ[key]
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["APIHUB_STATE_ROOT"] = state_root.as_posix()
    os.environ["APIHUB_NODE_ADDRESS"] = "node-a:8080"
    os.environ["APIHUB_BACKGROUND_TASKS_ENABLED"] = "false"
    for key, value in overrides.items():
        os.environ[key] = value

    get_settings.cache_clear()
    db_session_module.reset_engine()
    reset_ws_runtime()
    initialize_database()
    return create_app()


def sources_zip() -> bytes:
    spec = {"openapi": "3.0.0", "info": {"title": "T", "version": "1"}, "paths": {"/pets": {"get": {}}}}
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("petstore.json", json.dumps(spec))
    return buffer.getvalue()


def test_log_level_can_be_read_and_changed(tmp_path: Path) -> None:
    client = TestClient(setup_env(tmp_path))
    previous = get_log_level_handle().get()
    try:
        response = client.put("/api/internal/logs/level", json={"level": "debug"})
        assert response.status_code == 200
        assert response.json() == {"level": "DEBUG"}
        assert client.get("/api/internal/logs/level").json() == {"level": "DEBUG"}

        rejected = client.put("/api/internal/logs/level", json={"level": "chatty"})
        assert rejected.status_code == 400
        assert rejected.json()["code"] == "invalidParameterValue"
        assert client.get("/api/internal/logs/level").json() == {"level": "DEBUG"}
    finally:
        get_log_level_handle().set(previous)


def test_health_reports_node_identity(tmp_path: Path) -> None:
    client = TestClient(setup_env(tmp_path, APIHUB_ENVIRONMENT="test"))

    payload = client.get("/api/v1/health").json()

    assert payload["status"] == "ok"
    assert payload["service"] == "APIHub"
    assert payload["environment"] == "test"
    assert payload["nodeAddress"] == "node-a:8080"
    assert "timestamp" in payload


def test_ready_follows_lifespan(tmp_path: Path) -> None:
    app = setup_env(tmp_path)

    assert TestClient(app).get("/api/v1/ready").status_code == 503

    with TestClient(app) as client:
        response = client.get("/api/v1/ready")
        assert response.status_code == 200
        assert response.json() == {"status": "ready"}

    assert TestClient(app).get("/api/v1/ready").status_code == 503


def test_load_balancer_state_lists_this_node(tmp_path: Path) -> None:
    client = TestClient(setup_env(tmp_path))

    payload = client.get("/api/internal/websocket/loadbalancer").json()

    assert payload["bindAddr"] == "node-a:8080"
    assert payload["sessions"] == []
    assert payload["forwardedSessions"] == []


def test_builds_are_listed_and_filtered(tmp_path: Path) -> None:
    client = TestClient(setup_env(tmp_path))
    created = client.post("/api/v2/packages", json={"packageId": "pkg.alpha", "name": "Alpha"}, headers=HEADERS)
    assert created.status_code == 201
    config = {"packageId": "pkg.alpha", "version": "v1", "buildType": "build", "status": "draft"}
    published = client.post(
        "/api/v2/packages/pkg.alpha/publish",
        data={"config": json.dumps(config)},
        files={"sources": ("sources.zip", sources_zip(), "application/zip")},
        headers=HEADERS,
    )
    assert published.status_code == 202
    build_id = published.json()["publishId"]

    listing = client.get("/api/v2/builds", params={"packageId": "pkg.alpha"}).json()
    assert [item["buildId"] for item in listing["items"]] == [build_id]
    assert listing["items"][0]["status"] == "none"
    assert listing["nextCursor"] is None

    assert client.get("/api/v2/builds", params={"status": "complete"}).json()["items"] == []
    bad_status = client.get("/api/v2/builds", params={"status": "sleeping"})
    assert bad_status.status_code == 400

    single = client.get(f"/api/v2/builds/{build_id}")
    assert single.status_code == 200
    assert single.json()["packageId"] == "pkg.alpha"


def test_maintenance_endpoints_report_counts(tmp_path: Path) -> None:
    client = TestClient(setup_env(tmp_path))

    assert client.post("/api/v2/builds/recover-stale").json() == {"expired": 0, "recovered": 0}
    assert client.post("/api/v2/builds/prune", json={"olderThanDays": 1}).json() == {"pruned": 0}
    rejected = client.post("/api/v2/builds/prune", json={"olderThanDays": 0})
    assert rejected.status_code == 400
    assert rejected.json()["code"] == "badRequestBody"
