from __future__ import annotations

import base64
import io
import json
import os
import zipfile
from pathlib import Path

from fastapi.testclient import TestClient
from sqlalchemy import func, select

import apihub.db.session as db_session_module
from apihub.api.app import create_app
from apihub.builds.archive import unpack_build_archive, write_result_archive
from apihub.core.config import get_settings
from apihub.db.init_db import initialize_database
from apihub.db.models import Build
from apihub.worker import BuildExecutor
from apihub.ws.runtime import reset_ws_runtime

PUBLISH_URL = "/api/v2/packages/pkg.alpha/publish"
HEADERS = {"X-User-Id": "alice"}


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
    client = TestClient(create_app())
    response = client.post("/api/v2/packages", json={"packageId": "pkg.alpha", "name": "Alpha"}, headers=HEADERS)
    assert response.status_code == 201
    return client


def run_executor() -> bool:
    return BuildExecutor(get_settings(), db_session_module.get_session_factory()).run_once()


def sources_zip(files: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in files.items():
            archive.writestr(name, content)
    return buffer.getvalue()


PETSTORE = json.dumps(
    {
        "openapi": "3.0.0",
        "info": {"title": "Petstore", "version": "1.0"},
        "paths": {"/pets": {"get": {"summary": "List pets", "responses": {"200": {"description": "ok"}}}}},
    }
).encode("utf-8")


def publish(client: TestClient, *, version: str = "v1", sources: bytes | None = None, **fields: str):
    config = {"packageId": "pkg.alpha", "version": version, "buildType": "build", "status": "release"}
    files = {"sources": ("sources.zip", sources if sources is not None else sources_zip({"petstore.json": PETSTORE}), "application/zip")}
    return client.post(PUBLISH_URL, data={"config": json.dumps(config), **fields}, files=files, headers=HEADERS)


def build_count() -> int:
    with db_session_module.get_session_factory()() as session:
        return int(session.scalar(select(func.count()).select_from(Build)) or 0)


def test_publish_then_resubmit_reuses_completed_build(tmp_path: Path) -> None:
    client = setup_env(tmp_path)

    first = publish(client)
    assert first.status_code == 202
    publish_id = first.json()["publishId"]
    assert first.json()["status"] == "running"

    duplicate = publish(client)
    assert duplicate.status_code == 202
    assert duplicate.json()["publishId"] == publish_id

    assert run_executor() is True
    status_response = client.get(f"{PUBLISH_URL}/{publish_id}/status")
    assert status_response.status_code == 200
    assert status_response.json() == {"publishId": publish_id, "status": "complete", "message": None}

    again = publish(client)
    assert again.status_code == 204
    assert build_count() == 1

    version = client.get("/api/v2/packages/pkg.alpha/versions/v1")
    assert version.status_code == 200
    assert version.json()["version"] == "v1@1"
    assert version.json()["publishId"] == publish_id


def test_oversized_upload_is_rejected_before_any_build(tmp_path: Path) -> None:
    client = setup_env(
        tmp_path,
        APIHUB_PUBLISH_ARCHIVE_SIZE_LIMIT_MB="1",
        APIHUB_PUBLISH_FILE_SIZE_LIMIT_MB="1",
    )

    response = publish(client, sources=b"\0" * (1024 * 1024 + 512))

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "archiveSizeExceeded"
    assert body["status"] == 400
    assert body["params"] == {"size": "1 MB"}
    assert build_count() == 0


def test_oversized_upload_without_content_length_is_rejected(tmp_path: Path) -> None:
    client = setup_env(
        tmp_path,
        APIHUB_PUBLISH_ARCHIVE_SIZE_LIMIT_MB="1",
        APIHUB_PUBLISH_FILE_SIZE_LIMIT_MB="1",
    )
    boundary = "apihub-test-boundary"
    config = {"packageId": "pkg.alpha", "version": "v1", "buildType": "build", "status": "release"}
    head = (
        f"--{boundary}\r\n"
        'Content-Disposition: form-data; name="config"\r\n\r\n'
        f"{json.dumps(config)}\r\n"
        f"--{boundary}\r\n"
        'Content-Disposition: form-data; name="sources"; filename="sources.zip"\r\n'
        "Content-Type: application/zip\r\n\r\n"
    ).encode("utf-8")
    tail = f"\r\n--{boundary}--\r\n".encode("utf-8")

    def chunks():
        yield head
        for _ in range(3):
            yield b"\0" * (512 * 1024)
        yield tail

    response = client.post(
        PUBLISH_URL,
        content=chunks(),
        headers={**HEADERS, "Content-Type": f"multipart/form-data; boundary={boundary}"},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "archiveSizeExceeded"
    assert build_count() == 0


def test_base64_encoded_sources_are_decoded(tmp_path: Path) -> None:
    client = setup_env(tmp_path)
    config = {"packageId": "pkg.alpha", "version": "v1", "buildType": "build", "status": "draft"}
    encoded = base64.b64encode(sources_zip({"petstore.json": PETSTORE}))

    response = client.post(
        PUBLISH_URL,
        data={"config": json.dumps(config)},
        files={"sources": ("sources.zip", encoded, "application/octet-stream")},
        headers={**HEADERS, "Content-Transfer-Encoding": "base64"},
    )

    assert response.status_code == 202
    run_executor()
    operations = client.get("/api/v2/packages/pkg.alpha/versions/v1/operations")
    assert [op["operationId"] for op in operations.json()["operations"]] == ["pets-get"]


def test_config_package_id_must_match_path(tmp_path: Path) -> None:
    client = setup_env(tmp_path)
    config = {"packageId": "pkg.other", "version": "v1", "buildType": "build", "status": "draft"}

    response = client.post(PUBLISH_URL, data={"config": json.dumps(config)}, headers=HEADERS)

    assert response.status_code == 400
    assert response.json()["code"] == "packageIdMismatch"


def test_missing_config_is_reported(tmp_path: Path) -> None:
    client = setup_env(tmp_path)

    response = client.post(PUBLISH_URL, data={"clientBuild": "false"}, headers=HEADERS)

    assert response.status_code == 400
    assert response.json()["code"] == "requiredParamsMissing"


def test_unknown_publish_id_is_not_found(tmp_path: Path) -> None:
    client = setup_env(tmp_path)

    response = client.get(f"{PUBLISH_URL}/does-not-exist/status")

    assert response.status_code == 404
    assert response.json()["code"] == "buildNotFound"


def test_bulk_statuses(tmp_path: Path) -> None:
    client = setup_env(tmp_path)
    first = publish(client, version="v1").json()["publishId"]
    second = publish(client, version="v2").json()["publishId"]

    response = client.post(f"{PUBLISH_URL}/statuses", json={"publishIds": [first, second]})

    assert response.status_code == 200
    assert [item["publishId"] for item in response.json()] == [first, second]
    assert {item["status"] for item in response.json()} == {"none"}


def test_remote_builder_handoff(tmp_path: Path) -> None:
    client = setup_env(tmp_path)

    created = publish(client, clientBuild="true", builderId="b1")
    assert created.status_code == 201
    build_id = created.json()["buildId"]
    assert created.json()["publishId"] == build_id
    assert created.json()["version"] == "v1"

    pulled = client.get("/api/v2/builders/free-build", params={"builderId": "b1"})
    assert pulled.status_code == 200
    assert pulled.headers["content-type"] == "application/zip"
    config, sources = unpack_build_archive(pulled.content)
    assert config["buildId"] == build_id
    assert sources == {"petstore.json": PETSTORE}

    assert client.get("/api/v2/builders/free-build", params={"builderId": "b1"}).status_code == 204

    result = write_result_archive(
        {"packageId": "pkg.alpha", "version": "v1", "buildType": "build"},
        documents=[{"fileId": "petstore.json", "slug": "petstore", "type": "openapi-3-0", "format": "json"}],
        operations=[{"operationId": "pets-get", "title": "List pets", "method": "get", "path": "/pets"}],
        files={"petstore.json": PETSTORE},
    )
    stolen = client.post(
        f"{PUBLISH_URL}/{build_id}/status",
        data={"status": "complete", "builderId": "b2"},
        files={"data": ("result.zip", result, "application/zip")},
        headers=HEADERS,
    )
    assert stolen.status_code == 403
    assert stolen.json()["code"] == "notOwner"

    reported = client.post(
        f"{PUBLISH_URL}/{build_id}/status",
        data={"status": "complete", "builderId": "b1"},
        files={"data": ("result.zip", result, "application/zip")},
        headers=HEADERS,
    )
    assert reported.status_code == 204

    status_response = client.get(f"{PUBLISH_URL}/{build_id}/status")
    assert status_response.json()["status"] == "complete"
    version = client.get("/api/v2/packages/pkg.alpha/versions/v1").json()
    assert version["revision"] == 1


def test_builder_reported_error_is_visible(tmp_path: Path) -> None:
    client = setup_env(tmp_path)
    build_id = publish(client, clientBuild="true", builderId="b1").json()["buildId"]
    client.get("/api/v2/builders/free-build", params={"builderId": "b1"})

    response = client.post(
        f"{PUBLISH_URL}/{build_id}/status",
        data={"status": "error", "builderId": "b1", "errors": "document is broken"},
        headers=HEADERS,
    )

    assert response.status_code == 204
    status_response = client.get(f"{PUBLISH_URL}/{build_id}/status").json()
    assert status_response == {"publishId": build_id, "status": "error", "message": "document is broken"}


def test_empty_api_key_header_is_rejected(tmp_path: Path) -> None:
    client = setup_env(tmp_path)

    response = client.post("/api/v2/packages", json={"packageId": "pkg.beta", "name": "Beta"}, headers={"api-key": ""})

    assert response.status_code == 401
    assert response.json()["code"] == "apiKeyHeaderEmpty"
