from __future__ import annotations

import io
import json
import os
import zipfile
from pathlib import Path

import yaml
from fastapi.testclient import TestClient

import apihub.db.session as db_session_module
from apihub.api.app import create_app
from apihub.core.config import get_settings
from apihub.db.init_db import initialize_database
from apihub.worker import BuildExecutor
from apihub.ws.runtime import reset_ws_runtime

HEADERS = {"X-User-Id": "alice"}
VERSION_URL = "/api/v2/packages/pkg.alpha/versions/v1"
GROUP_URL = f"{VERSION_URL}/rest/groups/pets"
PATHS = {
    "/pets": {
        "get": {"summary": "List pets", "responses": {"200": {"description": "ok"}}},
        "post": {"summary": "Add pet", "responses": {"201": {"description": "created"}}},
    },
    "/stores": {"get": {"summary": "List stores", "responses": {"200": {"description": "ok"}}}},
}


def setup_env(tmp_path: Path) -> TestClient:
    for key in [key for key in os.environ if key.startswith("APIHUB_")]:
        del os.environ[key]
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["APIHUB_STATE_ROOT"] = state_root.as_posix()
    os.environ["APIHUB_NODE_ADDRESS"] = "node-a:8080"
    os.environ["APIHUB_BACKGROUND_TASKS_ENABLED"] = "false"

    get_settings.cache_clear()
    db_session_module.reset_engine()
    reset_ws_runtime()
    initialize_database()
    client = TestClient(create_app())
    client.post("/api/v2/packages", json={"packageId": "pkg.alpha", "name": "Alpha"}, headers=HEADERS)

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("petstore.json", json.dumps({"openapi": "3.0.0", "info": {"title": "Pets"}, "paths": PATHS}))
    config = {"packageId": "pkg.alpha", "version": "v1", "buildType": "build", "status": "release"}
    response = client.post(
        "/api/v2/packages/pkg.alpha/publish",
        data={"config": json.dumps(config)},
        files={"sources": ("sources.zip", buffer.getvalue(), "application/zip")},
        headers=HEADERS,
    )
    assert response.status_code == 202
    assert run_executor() is True
    return client


def run_executor() -> bool:
    return BuildExecutor(get_settings(), db_session_module.get_session_factory()).run_once()


def create_group(client: TestClient, **files) -> dict:
    response = client.post(
        f"{VERSION_URL}/rest/groups",
        data={"groupName": "pets", "description": "Pet operations", "operationIds": json.dumps(["pets-get", "pets-post"])},
        files=files or None,
        headers=HEADERS,
    )
    assert response.status_code == 201
    return response.json()


def test_group_lifecycle(tmp_path: Path) -> None:
    client = setup_env(tmp_path)
    created = create_group(client, template=("export.md", b"# {{title}}", "text/markdown"))

    assert created["version"] == "v1@1"
    assert created["operationIds"] == ["pets-get", "pets-post"]
    assert created["operationsCount"] == 2
    assert created["hasExportTemplate"] is True
    assert created["exportTemplateFileName"] == "export.md"

    template = client.get(f"{GROUP_URL}/template")
    assert template.status_code == 200
    assert template.content == b"# {{title}}"

    listed = client.get(f"{VERSION_URL}/groups", params={"apiType": "rest"})
    assert [item["groupName"] for item in listed.json()["operationGroups"]] == ["pets"]

    kept = client.patch(GROUP_URL, data={"description": "Updated"}, headers=HEADERS)
    assert kept.status_code == 200
    assert kept.json()["description"] == "Updated"
    assert kept.json()["hasExportTemplate"] is True

    cleared = client.patch(GROUP_URL, data={"template": ""}, headers=HEADERS)
    assert cleared.json()["hasExportTemplate"] is False
    assert client.get(f"{GROUP_URL}/template").status_code == 204

    renamed = client.patch(GROUP_URL, data={"groupName": "animals"}, headers=HEADERS)
    assert renamed.json()["groupName"] == "animals"
    assert client.get(GROUP_URL).status_code == 404

    assert client.delete(f"{VERSION_URL}/rest/groups/animals").status_code == 204
    assert client.get(f"{VERSION_URL}/groups").json()["operationGroups"] == []


def test_group_rejects_unknown_operations_and_duplicates(tmp_path: Path) -> None:
    client = setup_env(tmp_path)
    create_group(client)

    duplicate = client.post(f"{VERSION_URL}/rest/groups", data={"groupName": "pets"}, headers=HEADERS)
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "operationGroupAlreadyExists"

    unknown = client.post(
        f"{VERSION_URL}/rest/groups",
        data={"groupName": "ghosts", "operationIds": json.dumps(["ghost-get"])},
        headers=HEADERS,
    )
    assert unknown.status_code == 400
    assert unknown.json()["code"] == "invalidParameterValue"

    bad_type = client.post(f"{VERSION_URL}/soap/groups", data={"groupName": "x"}, headers=HEADERS)
    assert bad_type.status_code == 400
    assert bad_type.json()["code"] == "unsupportedApiType"


def test_document_group_transformation(tmp_path: Path) -> None:
    client = setup_env(tmp_path)
    create_group(client)
    transform_url = f"{GROUP_URL}/transformation/documentGroup"

    missing = client.get(f"{transform_url}/documents")
    assert missing.status_code == 404
    assert missing.json()["code"] == "transformedDocumentsNotFound"

    first = client.post(transform_url, headers=HEADERS)
    second = client.post(transform_url, headers=HEADERS)
    assert first.status_code == 202
    assert second.json()["buildId"] == first.json()["buildId"]

    assert run_executor() is True
    assert client.post(transform_url, headers=HEADERS).status_code == 200

    documents = client.get(f"{transform_url}/documents")
    assert documents.status_code == 200
    assert documents.headers["content-type"] == "application/zip"
    with zipfile.ZipFile(io.BytesIO(documents.content)) as archive:
        body = json.loads(archive.read("documents/petstore.json"))
    assert set(body["paths"]) == {"/pets"}
    assert set(body["paths"]["/pets"]) == {"get", "post"}


def test_merged_specification_in_yaml(tmp_path: Path) -> None:
    client = setup_env(tmp_path)
    create_group(client)
    transform_url = f"{GROUP_URL}/transformation/mergedSpecification"

    assert client.post(transform_url, params={"format": "yaml"}, headers=HEADERS).status_code == 202
    run_executor()

    documents = client.get(f"{transform_url}/documents", params={"format": "yaml"})
    with zipfile.ZipFile(io.BytesIO(documents.content)) as archive:
        merged = yaml.safe_load(archive.read("documents/pets.yaml"))
    assert merged["info"]["title"] == "pets"
    assert list(merged["paths"]) == ["/pets"]

    json_variant = client.get(f"{transform_url}/documents", params={"format": "json"})
    assert json_variant.status_code == 404


def test_changing_group_operations_drops_transformed_documents(tmp_path: Path) -> None:
    client = setup_env(tmp_path)
    create_group(client)
    transform_url = f"{GROUP_URL}/transformation/documentGroup"
    client.post(transform_url, headers=HEADERS)
    run_executor()
    assert client.get(f"{transform_url}/documents").status_code == 200

    client.patch(GROUP_URL, data={"operationIds": json.dumps(["pets-get"])}, headers=HEADERS)

    assert client.get(f"{transform_url}/documents").status_code == 404
    assert client.post(transform_url, headers=HEADERS).status_code == 202


def test_unsupported_format_for_build_type(tmp_path: Path) -> None:
    client = setup_env(tmp_path)
    create_group(client)

    response = client.post(f"{GROUP_URL}/transformation/documentGroup", params={"format": "yaml"}, headers=HEADERS)

    assert response.status_code == 400
    assert response.json()["code"] == "formatNotSupportedForBuildType"
