"""Server-side WebSocket redirect.

The accepting node keeps the client socket and opens a second socket to the
owning node, then pumps frames both ways until either side goes away.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlsplit, urlunsplit
from uuid import uuid4

import aiohttp
from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

from apihub.core.config import Settings

logger = logging.getLogger(__name__)

FORWARDED_KEY_HEADER = "X-Forwarded-Sec-WebSocket-Key"
USER_ID_HEADER = "X-User-Id"
REMOTE_TERMINAL_TYPES = (
    aiohttp.WSMsgType.CLOSE,
    aiohttp.WSMsgType.CLOSING,
    aiohttp.WSMsgType.CLOSED,
    aiohttp.WSMsgType.ERROR,
)


def redact_url(url: str) -> str:
    """Drop the query (it carries the caller's token)."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


@dataclass(slots=True)
class ForwardedSession:
    id: str
    session_id: str
    remote_url: str
    started: datetime
    sec_ws_key: str | None
    remote: Any = field(default=None, repr=False)

    def to_public(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "url": redact_url(self.remote_url),
            "started": self.started.isoformat(),
            "wsKey": self.sec_ws_key,
        }


class WsForwarder:
    def __init__(
        self,
        settings: Settings,
        client_session_factory: Callable[[], Any] | None = None,
    ):
        self._settings = settings
        self._client_session_factory = client_session_factory or aiohttp.ClientSession
        self._sessions: dict[str, ForwardedSession] = {}

    def list_forwarded(self) -> list[ForwardedSession]:
        return sorted(self._sessions.values(), key=lambda item: item.started)

    async def bridge(
        self,
        client_ws: WebSocket,
        session_id: str,
        target_url: str,
        sec_ws_key: str | None = None,
        user_id: str | None = None,
    ) -> None:
        """Relay ``client_ws`` to ``target_url`` until one side closes. ``client_ws`` must be accepted.

        ``user_id`` is passed on so the owning node lists the caller under its own id.
        """
        headers: dict[str, str] = {}
        if sec_ws_key:
            headers[FORWARDED_KEY_HEADER] = sec_ws_key
        if user_id:
            headers[USER_ID_HEADER] = user_id
        async with self._client_session_factory() as http:
            try:
                remote = await http.ws_connect(
                    target_url,
                    headers=headers or None,
                    heartbeat=float(self._settings.ws_ping_interval_seconds),
                )
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.error("Redirect to %s failed: %s", redact_url(target_url), exc)
                await self._close_client(client_ws, code=1011)
                return

            forwarded = ForwardedSession(
                id=str(uuid4()),
                session_id=session_id,
                remote_url=target_url,
                started=datetime.now(tz=timezone.utc),
                sec_ws_key=sec_ws_key,
                remote=remote,
            )
            self._sessions[forwarded.id] = forwarded
            logger.debug("Forward connection to %s established", redact_url(target_url))
            try:
                await self._pump_both(client_ws, remote)
            finally:
                self._sessions.pop(forwarded.id, None)
                await remote.close()
                await self._close_client(client_ws)
                logger.debug("Forward connection to %s closed", redact_url(target_url))

    async def _pump_both(self, client_ws: WebSocket, remote: Any) -> None:
        to_remote = asyncio.create_task(self._client_to_remote(client_ws, remote))
        to_client = asyncio.create_task(self._remote_to_client(remote, client_ws))
        done, pending = await asyncio.wait({to_remote, to_client}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.warning("Forwarding pump stopped with %s: %s", type(error).__name__, error)

    async def _client_to_remote(self, client_ws: WebSocket, remote: Any) -> None:
        while True:
            message = await client_ws.receive()
            if message["type"] == "websocket.disconnect":
                return
            if message.get("text") is not None:
                await remote.send_str(message["text"])
            elif message.get("bytes") is not None:
                await remote.send_bytes(message["bytes"])

    async def _remote_to_client(self, remote: Any, client_ws: WebSocket) -> None:
        async for message in remote:
            if message.type == aiohttp.WSMsgType.TEXT:
                await client_ws.send_text(message.data)
            elif message.type == aiohttp.WSMsgType.BINARY:
                await client_ws.send_bytes(message.data)
            elif message.type in REMOTE_TERMINAL_TYPES:
                return

    async def _close_client(self, client_ws: WebSocket, code: int = 1000) -> None:
        if client_ws.application_state == WebSocketState.DISCONNECTED:
            return
        if client_ws.client_state == WebSocketState.DISCONNECTED:
            return
        try:
            await client_ws.close(code=code)
        except RuntimeError as exc:
            logger.debug("Client socket already closed: %s", exc)

    async def close_forwarded(self, session_id: str) -> int:
        """Close every bridge for ``session_id``; their pumps finish and clean up."""
        targets = [item for item in self._sessions.values() if item.session_id == session_id]
        for item in targets:
            await item.remote.close()
        return len(targets)
