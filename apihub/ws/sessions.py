from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

from apihub.core.config import Settings
from apihub.core.errors import ErrorCode
from apihub.ws.balancer import WsLoadBalancer

logger = logging.getLogger(__name__)

RECONNECT_CLOSE_CODE = 4000
RECONNECT_REASON = "reconnect"
MESSAGE_TOO_BIG_CLOSE_CODE = 1009

Frame = tuple[str, Any]


@dataclass(slots=True)
class EditClient:
    ws_id: str
    user_id: str
    socket: WebSocket
    outbox: asyncio.Queue[Frame | None] = field(default_factory=asyncio.Queue)

    def to_public(self) -> dict[str, Any]:
        return {"sessionId": self.ws_id, "user": {"id": self.user_id}}


@dataclass(slots=True)
class EditChannel:
    clients: dict[str, EditClient] = field(default_factory=dict)


class SessionManager:
    """Local edit sessions for the keys this node owns."""

    def __init__(self, settings: Settings, balancer: WsLoadBalancer):
        self._settings = settings
        self._balancer = balancer
        self._channels: dict[str, EditChannel] = {}
        self._lock = asyncio.Lock()

    def active_keys(self) -> list[str]:
        return list(self._channels)

    def client_count(self, key: str) -> int:
        channel = self._channels.get(key)
        return 0 if channel is None else len(channel.clients)

    async def connect(self, key: str, ws_id: str, socket: WebSocket, user_id: str) -> None:
        """Serve an accepted socket until the client leaves."""
        client = EditClient(ws_id=ws_id, user_id=user_id, socket=socket)
        async with self._lock:
            channel = self._channels.setdefault(key, EditChannel())
            existing = [item.to_public() for item in channel.clients.values()]
            channel.clients[ws_id] = client
        await asyncio.to_thread(self._balancer.track_session, key)

        client.outbox.put_nowait(("json", {"type": "user:connected:list", "users": existing}))
        await self._broadcast(key, ("json", {"type": "user:connected", **client.to_public()}), skip=ws_id)

        writer = asyncio.create_task(self._write_pump(key, client))
        try:
            await self._read_pump(key, client)
        finally:
            client.outbox.put_nowait(None)
            with contextlib.suppress(asyncio.CancelledError):
                await writer
            await self._leave(key, client)

    async def _read_pump(self, key: str, client: EditClient) -> None:
        limit = self._settings.branch_content_size_limit_bytes
        while True:
            try:
                message = await client.socket.receive()
            except (WebSocketDisconnect, RuntimeError):
                return
            if message["type"] == "websocket.disconnect":
                return
            if message.get("text") is not None:
                frame: Frame = ("text", message["text"])
                size = len(message["text"].encode("utf-8"))
            elif message.get("bytes") is not None:
                frame = ("bytes", message["bytes"])
                size = len(message["bytes"])
            else:
                continue
            if size > limit:
                logger.warning("Client %s of %s sent %d bytes over the content limit", client.ws_id, key, size)
                await self._close(client.socket, MESSAGE_TOO_BIG_CLOSE_CODE, ErrorCode.BRANCH_CONTENT_SIZE_EXCEEDED.value)
                return
            await self._broadcast(key, frame, skip=client.ws_id)

    async def _write_pump(self, key: str, client: EditClient) -> None:
        while True:
            frame = await client.outbox.get()
            if frame is None:
                return
            kind, payload = frame
            try:
                if kind == "json":
                    await client.socket.send_json(payload)
                elif kind == "text":
                    await client.socket.send_text(payload)
                else:
                    await client.socket.send_bytes(payload)
            except (WebSocketDisconnect, RuntimeError) as exc:
                logger.debug("Write to client %s of %s failed: %s", client.ws_id, key, exc)
                await self._close(client.socket, 1011, "write failed")
                return

    async def _broadcast(self, key: str, frame: Frame, *, skip: str | None = None) -> None:
        async with self._lock:
            channel = self._channels.get(key)
            targets = [] if channel is None else [item for item in channel.clients.values() if item.ws_id != skip]
        for target in targets:
            target.outbox.put_nowait(frame)

    async def _leave(self, key: str, client: EditClient) -> None:
        async with self._lock:
            channel = self._channels.get(key)
            if channel is None:
                return
            channel.clients.pop(client.ws_id, None)
            empty = not channel.clients
            if empty:
                self._channels.pop(key, None)
        if empty:
            await asyncio.to_thread(self._balancer.release_session, key)
            logger.info("Last client left ws session %s", key)
        else:
            await self._broadcast(key, ("json", {"type": "user:disconnected", **client.to_public()}))

    async def disconnect_all(self, key: str) -> int:
        async with self._lock:
            channel = self._channels.get(key)
            clients = [] if channel is None else list(channel.clients.values())
        for client in clients:
            await self._close(client.socket, RECONNECT_CLOSE_CODE, RECONNECT_REASON)
        if clients:
            logger.info("Disconnected %d clients of ws session %s", len(clients), key)
        return len(clients)

    async def _close(self, socket: WebSocket, code: int, reason: str) -> None:
        if socket.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await socket.close(code=code, reason=reason)
        except RuntimeError as exc:
            logger.debug("Socket already closed: %s", exc)
