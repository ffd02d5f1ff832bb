from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path
from typing import Any

from starlette.websockets import WebSocketState

from apihub.core.config import get_settings
from apihub.ws.sessions import MESSAGE_TOO_BIG_CLOSE_CODE, RECONNECT_CLOSE_CODE, SessionManager

KEY = "proj|@@|main"


def setup_env(tmp_path: Path, **overrides: str):
    for key in [key for key in os.environ if key.startswith("APIHUB_")]:
        del os.environ[key]
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["APIHUB_STATE_ROOT"] = state_root.as_posix()
    os.environ["APIHUB_NODE_ADDRESS"] = "node-a:8080"
    for key, value in overrides.items():
        os.environ[key] = value
    get_settings.cache_clear()
    return get_settings()


class RecordingBalancer:
    def __init__(self) -> None:
        self.tracked: list[str] = []
        self.released: list[str] = []

    def track_session(self, session_id: str) -> bool:
        self.tracked.append(session_id)
        return True

    def release_session(self, session_id: str) -> bool:
        self.released.append(session_id)
        return True


class FakeSocket:
    def __init__(self) -> None:
        self.incoming: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self.sent: list[tuple[str, Any]] = []
        self.closed: list[tuple[int, str | None]] = []
        self.application_state = WebSocketState.CONNECTED

    def push_text(self, text: str) -> None:
        self.incoming.put_nowait({"type": "websocket.receive", "text": text})

    def leave(self) -> None:
        self.incoming.put_nowait({"type": "websocket.disconnect", "code": 1000})

    async def receive(self) -> dict[str, Any]:
        return await self.incoming.get()

    async def send_json(self, data: Any) -> None:
        self.sent.append(("json", data))

    async def send_text(self, data: str) -> None:
        self.sent.append(("text", data))

    async def send_bytes(self, data: bytes) -> None:
        self.sent.append(("bytes", data))

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed.append((code, reason))
        self.application_state = WebSocketState.DISCONNECTED
        self.leave()


async def wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def _json_types(socket: FakeSocket) -> list[str]:
    return [payload["type"] for kind, payload in socket.sent if kind == "json"]


def test_frames_fan_out_to_other_clients(tmp_path: Path) -> None:
    settings = setup_env(tmp_path)
    balancer = RecordingBalancer()

    async def scenario() -> tuple[FakeSocket, FakeSocket, SessionManager]:
        manager = SessionManager(settings, balancer)
        alice, bob = FakeSocket(), FakeSocket()
        alice_task = asyncio.create_task(manager.connect(KEY, "ws-a", alice, "alice"))
        await wait_until(lambda: manager.client_count(KEY) == 1)
        bob_task = asyncio.create_task(manager.connect(KEY, "ws-b", bob, "bob"))
        await wait_until(lambda: manager.client_count(KEY) == 2)

        alice.push_text("edit-1")
        await wait_until(lambda: ("text", "edit-1") in bob.sent)

        bob.leave()
        await bob_task
        await wait_until(lambda: "user:disconnected" in _json_types(alice))
        assert manager.active_keys() == [KEY]

        alice.leave()
        await alice_task
        return alice, bob, manager

    alice, bob, manager = asyncio.run(scenario())

    assert ("text", "edit-1") not in alice.sent
    assert bob.sent[0] == ("json", {"type": "user:connected:list", "users": [{"sessionId": "ws-a", "user": {"id": "alice"}}]})
    assert _json_types(alice) == ["user:connected:list", "user:connected", "user:disconnected"]
    assert balancer.tracked == [KEY, KEY]
    assert balancer.released == [KEY]
    assert manager.active_keys() == []


def test_oversized_frame_closes_the_sender(tmp_path: Path) -> None:
    settings = setup_env(tmp_path, APIHUB_BRANCH_CONTENT_SIZE_LIMIT_MB="1")
    balancer = RecordingBalancer()

    async def scenario() -> FakeSocket:
        manager = SessionManager(settings, balancer)
        socket = FakeSocket()
        task = asyncio.create_task(manager.connect(KEY, "ws-a", socket, "alice"))
        await wait_until(lambda: manager.client_count(KEY) == 1)
        socket.push_text("x" * (1024 * 1024 + 1))
        await asyncio.wait_for(task, timeout=5)
        return socket

    socket = asyncio.run(scenario())

    assert socket.closed == [(MESSAGE_TOO_BIG_CLOSE_CODE, "branchContentSizeExceeded")]
    assert balancer.released == [KEY]


def test_disconnect_all_asks_clients_to_reconnect(tmp_path: Path) -> None:
    settings = setup_env(tmp_path)
    balancer = RecordingBalancer()

    async def scenario() -> tuple[int, FakeSocket, FakeSocket]:
        manager = SessionManager(settings, balancer)
        first, second = FakeSocket(), FakeSocket()
        tasks = [
            asyncio.create_task(manager.connect(KEY, "ws-1", first, "alice")),
            asyncio.create_task(manager.connect(KEY, "ws-2", second, "bob")),
        ]
        await wait_until(lambda: manager.client_count(KEY) == 2)
        closed = await manager.disconnect_all(KEY)
        await asyncio.wait_for(asyncio.gather(*tasks), timeout=5)
        return closed, first, second

    closed, first, second = asyncio.run(scenario())

    assert closed == 2
    assert first.closed == [(RECONNECT_CLOSE_CODE, "reconnect")]
    assert second.closed == [(RECONNECT_CLOSE_CODE, "reconnect")]
    assert balancer.released == [KEY]
