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
from apihub.db.init_db import initialize_database
from apihub.worker import BuildExecutor
from apihub.ws.runtime import reset_ws_runtime

HEADERS = {"X-User-Id": "alice"}
PATHS = {"/pets": {"get": {"summary": "List pets", "responses": {"200": {"description": "ok"}}}}}


def setup_env(tmp_path: Path, **overrides: str) -> TestClient:
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
    return TestClient(create_app())


def create_package(client: TestClient, package_id: str, **extra) -> None:
    response = client.post("/api/v2/packages", json={"packageId": package_id, "name": package_id, **extra}, headers=HEADERS)
    assert response.status_code == 201


def publish_version(client: TestClient, package_id: str, version: str, **config_extra) -> None:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("petstore.json", json.dumps({"openapi": "3.0.0", "info": {"title": version}, "paths": PATHS}))
    config = {"packageId": package_id, "version": version, "buildType": "build", "status": "draft", **config_extra}
    response = client.post(
        f"/api/v2/packages/{package_id}/publish",
        data={"config": json.dumps(config)},
        files={"sources": ("sources.zip", buffer.getvalue(), "application/zip")},
        headers=HEADERS,
    )
    assert response.status_code == 202
    assert BuildExecutor(get_settings(), db_session_module.get_session_factory()).run_once() is True


def test_moved_package_redirects_from_old_id(tmp_path: Path) -> None:
    client = setup_env(tmp_path)
    create_package(client, "pkg.old")
    publish_version(client, "pkg.old", "v1")

    moved = client.post("/api/v2/packages/pkg.old/move", json={"newPackageId": "pkg.new"}, headers=HEADERS)
    assert moved.status_code == 200
    assert moved.json()["oldPackageId"] == "pkg.old"
    assert moved.json()["newPackageId"] == "pkg.new"
    assert moved.json()["movedBy"] == "alice"

    redirected = client.get("/api/v2/packages/pkg.old/versions/v1", params={"x": "1"}, follow_redirects=False)
    assert redirected.status_code == 301
    assert redirected.headers["location"] == "/api/v2/packages/pkg.new/versions/v1?x=1"

    followed = client.get("/api/v2/packages/pkg.old/versions/v1")
    assert followed.status_code == 200
    assert followed.json()["packageId"] == "pkg.new"
    assert followed.json()["version"] == "v1@1"


def test_chained_moves_redirect_to_latest_id(tmp_path: Path) -> None:
    client = setup_env(tmp_path)
    create_package(client, "pkg.a")
    client.post("/api/v2/packages/pkg.a/move", json={"newPackageId": "pkg.b"}, headers=HEADERS)
    client.post("/api/v2/packages/pkg.b/move", json={"newPackageId": "pkg.c"}, headers=HEADERS)

    response = client.get("/api/v2/packages/pkg.a", follow_redirects=False)

    assert response.status_code == 301
    assert response.headers["location"] == "/api/v2/packages/pkg.c"


def test_unknown_package_is_not_redirected(tmp_path: Path) -> None:
    client = setup_env(tmp_path)

    response = client.get("/api/v2/packages/pkg.missing", follow_redirects=False)

    assert response.status_code == 404
    assert response.json() == {
        "status": 404,
        "code": "packageNotFound",
        "message": "Package with packageId = pkg.missing not found",
        "params": {"packageId": "pkg.missing"},
    }


def test_move_onto_existing_package_conflicts(tmp_path: Path) -> None:
    client = setup_env(tmp_path)
    create_package(client, "pkg.a")
    create_package(client, "pkg.b")

    response = client.post("/api/v2/packages/pkg.a/move", json={"newPackageId": "pkg.b"}, headers=HEADERS)

    assert response.status_code == 409
    assert response.json()["code"] == "packageAlreadyExists"


def test_duplicate_package_and_bad_id_are_rejected(tmp_path: Path) -> None:
    client = setup_env(tmp_path)
    create_package(client, "pkg.a")

    duplicate = client.post("/api/v2/packages", json={"packageId": "pkg.a", "name": "again"}, headers=HEADERS)
    assert duplicate.status_code == 409

    invalid = client.post("/api/v2/packages", json={"packageId": "-bad id", "name": "bad"}, headers=HEADERS)
    assert invalid.status_code == 400
    assert invalid.json()["code"] == "invalidParameterValue"

    unknown_field = client.post("/api/v2/packages", json={"packageId": "pkg.x", "name": "x", "color": "red"})
    assert unknown_field.status_code == 400
    assert unknown_field.json()["code"] == "badRequestBody"


def test_release_version_must_match_pattern(tmp_path: Path) -> None:
    client = setup_env(tmp_path)
    create_package(client, "pkg.a", releaseVersionPattern=r"^\d+\.\d+$")
    config = {"packageId": "pkg.a", "version": "latest", "buildType": "build", "status": "release"}

    response = client.post("/api/v2/packages/pkg.a/publish", data={"config": json.dumps(config)}, headers=HEADERS)

    assert response.status_code == 400
    assert response.json()["code"] == "releaseVersionDoesntMatchPattern"


def test_patch_version_updates_status_and_labels(tmp_path: Path) -> None:
    client = setup_env(tmp_path)
    create_package(client, "pkg.a")
    publish_version(client, "pkg.a", "v1")

    response = client.patch(
        "/api/v2/packages/pkg.a/versions/v1",
        json={"status": "release", "versionLabels": ["beta", " beta ", "stable"]},
        headers=HEADERS,
    )

    assert response.status_code == 200
    assert response.json()["status"] == "release"
    assert response.json()["versionLabels"] == ["beta", "stable"]

    drafts = client.get("/api/v2/packages/pkg.a/versions", params={"status": "draft"})
    assert drafts.json()["versions"] == []
    releases = client.get("/api/v2/packages/pkg.a/versions", params={"status": "release"})
    assert [item["version"] for item in releases.json()["versions"]] == ["v1@1"]


def test_patch_version_respects_publish_roles(tmp_path: Path) -> None:
    client = setup_env(tmp_path, APIHUB_PUBLISH_STATUSES_BY_USER='{"bob": ["draft"]}')
    create_package(client, "pkg.a")
    publish_version(client, "pkg.a", "v1")

    response = client.patch(
        "/api/v2/packages/pkg.a/versions/v1",
        json={"status": "release"},
        headers={"X-User-Id": "bob"},
    )

    assert response.status_code == 403
    assert response.json()["code"] == "insufficientPrivileges"


def test_references_are_listed_recursively(tmp_path: Path) -> None:
    client = setup_env(tmp_path)
    for package_id in ("pkg.base", "pkg.mid", "pkg.dash"):
        create_package(client, package_id)
    publish_version(client, "pkg.base", "v1")
    publish_version(client, "pkg.mid", "v1", refs=[{"refId": "pkg.base", "version": "v1"}])
    publish_version(client, "pkg.dash", "v1", refs=[{"refId": "pkg.mid", "version": "v1"}])

    direct = client.get("/api/v2/packages/pkg.dash/versions/v1/references")
    assert [item["packageId"] for item in direct.json()["references"]] == ["pkg.mid"]

    recursive = client.get("/api/v2/packages/pkg.dash/versions/v1/references", params={"recursive": "true"})
    assert {item["packageId"] for item in recursive.json()["references"]} == {"pkg.mid", "pkg.base"}
