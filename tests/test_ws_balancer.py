from __future__ import annotations

import asyncio
import os
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import update

import apihub.db.session as db_session_module
from apihub.core.config import get_settings
from apihub.db.init_db import initialize_database
from apihub.db.models import WsSession
from apihub.ws.balancer import (
    LOCAL_SERVER,
    UnableToSelectWsServerError,
    WsLoadBalancer,
    build_redirect_url,
    make_branch_session_id,
    make_session_id,
    split_session_id,
)
from apihub.ws.directory import WsSessionDirectory, WsSessionSnapshot
from apihub.ws.forwarder import WsForwarder

NODE_A = "node-a:8080"
NODE_B = "node-b:8080"


def setup_env(tmp_path: Path) -> tuple[WsLoadBalancer, WsLoadBalancer]:
    for key in [key for key in os.environ if key.startswith("APIHUB_")]:
        del os.environ[key]
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["APIHUB_STATE_ROOT"] = state_root.as_posix()
    os.environ["APIHUB_NODE_ADDRESS"] = NODE_A
    os.environ["APIHUB_BACKGROUND_TASKS_ENABLED"] = "false"

    get_settings.cache_clear()
    db_session_module.reset_engine()
    initialize_database()
    session_factory = db_session_module.get_session_factory()

    settings_a = get_settings()
    settings_b = settings_a.model_copy(update={"node_address": NODE_B})
    node_a = WsLoadBalancer(settings_a, WsSessionDirectory(settings_a, session_factory), WsForwarder(settings_a))
    node_b = WsLoadBalancer(settings_b, WsSessionDirectory(settings_b, session_factory), WsForwarder(settings_b))
    return node_a, node_b


def _expire(session_id: str) -> None:
    with db_session_module.get_session_factory()() as session:
        session.execute(
            update(WsSession)
            .where(WsSession.session_id == session_id)
            .values(expires_at=datetime.now(tz=timezone.utc) - timedelta(seconds=1))
        )
        session.commit()


def test_concurrent_selection_elects_a_single_owner(tmp_path: Path) -> None:
    node_a, node_b = setup_env(tmp_path)
    barrier = threading.Barrier(2)
    results: dict[str, str] = {}

    def select(name: str, balancer: WsLoadBalancer) -> None:
        barrier.wait(timeout=2)
        results[name] = balancer.select_ws_server("proj", "main")

    threads = [
        threading.Thread(target=select, args=("a", node_a)),
        threading.Thread(target=select, args=("b", node_b)),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(results.values()) in ([LOCAL_SERVER, NODE_A], [LOCAL_SERVER, NODE_B])
    if results["a"] == LOCAL_SERVER:
        assert results["b"] == NODE_A
    else:
        assert results["a"] == NODE_B


def test_owner_keeps_routing_locally(tmp_path: Path) -> None:
    node_a, node_b = setup_env(tmp_path)

    assert node_a.select_ws_server("proj", "main") == LOCAL_SERVER
    assert node_a.select_ws_server("proj", "main") == LOCAL_SERVER
    assert node_b.select_ws_server("proj", "main") == NODE_A


def test_file_session_follows_its_branch(tmp_path: Path) -> None:
    node_a, node_b = setup_env(tmp_path)
    node_a.select_ws_server("proj", "main")

    assert node_b.select_ws_server("proj", "main", "openapi.yaml") == NODE_A


def test_branch_session_follows_existing_file_session(tmp_path: Path) -> None:
    node_a, node_b = setup_env(tmp_path)
    assert node_b.select_ws_server("proj", "main", "openapi.yaml") == LOCAL_SERVER

    assert node_a.select_ws_server("proj", "main") == NODE_B


def test_released_session_can_be_claimed_elsewhere(tmp_path: Path) -> None:
    node_a, node_b = setup_env(tmp_path)
    node_a.select_ws_server("proj", "main")

    assert node_b.release_session(make_branch_session_id("proj", "main")) is False
    assert node_a.release_session(make_branch_session_id("proj", "main")) is True
    assert node_b.select_ws_server("proj", "main") == LOCAL_SERVER


def test_expired_ownership_is_taken_over(tmp_path: Path) -> None:
    node_a, node_b = setup_env(tmp_path)
    node_a.select_ws_server("proj", "main")
    _expire(make_branch_session_id("proj", "main"))

    assert node_b.select_ws_server("proj", "main") == LOCAL_SERVER
    assert node_a.track_session(make_branch_session_id("proj", "main")) is False


@pytest.mark.parametrize(
    ("project_id", "branch_name", "file_id"),
    [("", "main", None), ("proj|@@|x", "main", None), ("proj", "ma|@@|in", None), ("proj", "main", "a|@@|b")],
)
def test_session_id_parts_are_validated(tmp_path: Path, project_id: str, branch_name: str, file_id: str | None) -> None:
    node_a, _ = setup_env(tmp_path)
    with pytest.raises(UnableToSelectWsServerError):
        node_a.select_ws_server(project_id, branch_name, file_id)


def test_session_ids_round_trip_through_split() -> None:
    assert split_session_id(make_session_id("proj", "main")) == ("proj", "main", None)
    assert split_session_id(make_session_id("proj", "main", "spec.yaml")) == ("proj", "main", "spec.yaml")
    with pytest.raises(ValueError):
        split_session_id("no-separator")


def test_redirect_url_escapes_path_parts() -> None:
    url = build_redirect_url(NODE_B, "proj 1", "feature/x", "spec.yaml", token="secret")
    assert url == "ws://node-b:8080/ws/v1/projects/proj%201/branches/feature%2Fx/files/spec.yaml?token=secret"
    assert build_redirect_url(NODE_B, "proj", "main") == "ws://node-b:8080/ws/v1/projects/proj/branches/main"


def test_split_sessions_are_detected(tmp_path: Path) -> None:
    node_a, _ = setup_env(tmp_path)
    now = datetime.now(tz=timezone.utc)

    def snapshot(session_id: str, node: str) -> WsSessionSnapshot:
        return WsSessionSnapshot(session_id=session_id, node_addr=node, created_at=now, expires_at=now)

    sessions = [
        snapshot(make_session_id("proj", "main"), NODE_A),
        snapshot(make_session_id("proj", "main", "a.yaml"), NODE_A),
        snapshot(make_session_id("proj", "main", "b.yaml"), NODE_B),
        snapshot(make_session_id("proj", "dev", "c.yaml"), NODE_B),
        snapshot("garbage", NODE_B),
    ]

    assert node_a.find_split_sessions(sessions) == [
        (make_session_id("proj", "main", "b.yaml"), make_session_id("proj", "main"))
    ]


def test_maintenance_heartbeats_node_and_refreshes_sessions(tmp_path: Path) -> None:
    node_a, _ = setup_env(tmp_path)
    key = make_branch_session_id("proj", "main")

    async def scenario() -> None:
        stop = asyncio.Event()
        task = asyncio.create_task(node_a.run_maintenance(stop, lambda: [key]))
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and not node_a.list_sessions():
            await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=5)

    asyncio.run(scenario())

    state = node_a.debug_state()
    assert state["bindAddr"] == NODE_A
    assert state["nodes"] == [NODE_A]
    assert [item["sessionId"] for item in state["sessions"]] == [key]
    assert state["forwardedSessions"] == []
