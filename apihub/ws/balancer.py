from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from typing import Any
from urllib.parse import quote, urlencode

from sqlalchemy.exc import SQLAlchemyError

from apihub.core.config import Settings
from apihub.core.errors import ApiHubError, ErrorCode
from apihub.ws.directory import WsSessionDirectory, WsSessionSnapshot
from apihub.ws.forwarder import WsForwarder

logger = logging.getLogger(__name__)

LOCAL_SERVER = "local"
SEPARATOR = "|@@|"
MAX_SELECT_ATTEMPTS = 5


class UnableToSelectWsServerError(ApiHubError):
    status_code = 500

    def __init__(self, session_id: str, debug: str | None = None):
        super().__init__(
            ErrorCode.UNABLE_TO_SELECT_WS_SERVER,
            "Unable to select ws server for session $sessionId",
            params={"sessionId": session_id},
            debug=debug,
        )


def _check_part(name: str, value: str) -> str:
    if not value or SEPARATOR in value:
        raise UnableToSelectWsServerError(value, debug=f"{name} must be non-empty and must not contain {SEPARATOR}")
    return value


def make_branch_session_id(project_id: str, branch_name: str) -> str:
    return SEPARATOR.join((_check_part("projectId", project_id), _check_part("branchName", branch_name)))


def make_file_session_id(project_id: str, branch_name: str, file_id: str) -> str:
    return SEPARATOR.join(
        (
            _check_part("projectId", project_id),
            _check_part("branchName", branch_name),
            _check_part("fileId", file_id),
        )
    )


def make_session_id(project_id: str, branch_name: str, file_id: str | None = None) -> str:
    if file_id:
        return make_file_session_id(project_id, branch_name, file_id)
    return make_branch_session_id(project_id, branch_name)


def split_session_id(session_id: str) -> tuple[str, str, str | None]:
    parts = session_id.split(SEPARATOR)
    if len(parts) == 2:
        return parts[0], parts[1], None
    if len(parts) == 3:
        return parts[0], parts[1], parts[2]
    raise ValueError(f"incorrect session id: {session_id}")


def build_redirect_url(
    node_addr: str,
    project_id: str,
    branch_name: str,
    file_id: str | None = None,
    token: str | None = None,
) -> str:
    path = f"/ws/v1/projects/{quote(project_id, safe='')}/branches/{quote(branch_name, safe='')}"
    if file_id:
        path += f"/files/{quote(file_id, safe='')}"
    query = f"?{urlencode({'token': token})}" if token else ""
    return f"ws://{node_addr}{path}{query}"


class WsLoadBalancer:
    """Routes each edit session key to exactly one node of the cluster."""

    def __init__(self, settings: Settings, directory: WsSessionDirectory, forwarder: WsForwarder):
        self._settings = settings
        self._directory = directory
        self._forwarder = forwarder
        self._bind_addr = settings.effective_node_address

    def get_bind_addr(self) -> str:
        return self._bind_addr

    def _route(self, node_addr: str) -> str:
        return LOCAL_SERVER if node_addr == self._bind_addr else node_addr

    def select_ws_server(self, project_id: str, branch_name: str, file_id: str | None = None) -> str:
        branch_session_id = make_branch_session_id(project_id, branch_name)
        session_id = make_session_id(project_id, branch_name, file_id)

        for _attempt in range(MAX_SELECT_ATTEMPTS):
            if file_id:
                # file sessions follow their branch session
                branch_owner = self._directory.get_owner(branch_session_id)
                if branch_owner is not None:
                    return self._route(branch_owner)
            else:
                file_sessions = self._directory.find_by_prefix(branch_session_id + SEPARATOR)
                if file_sessions:
                    return self._route(file_sessions[0].node_addr)

            owner = self._directory.get_owner(session_id)
            if owner is not None:
                return self._route(owner)
            if self._directory.put_if_absent(session_id, self._bind_addr):
                logger.info("Ws session %s is now served by %s", session_id, self._bind_addr)
                return LOCAL_SERVER

        raise UnableToSelectWsServerError(session_id, debug=f"ownership changed {MAX_SELECT_ATTEMPTS} times")

    def track_session(self, session_id: str) -> bool:
        return self._directory.refresh(session_id, self._bind_addr)

    def release_session(self, session_id: str) -> bool:
        return self._directory.release(session_id, self._bind_addr)

    def list_sessions(self) -> list[WsSessionSnapshot]:
        return self._directory.list_sessions()

    def list_nodes(self) -> list[str]:
        return self._directory.list_nodes()

    def list_forwarded_sessions(self) -> list[dict[str, Any]]:
        return [item.to_public() for item in self._forwarder.list_forwarded()]

    def debug_state(self) -> dict[str, Any]:
        return {
            "bindAddr": self.get_bind_addr(),
            "nodes": self.list_nodes(),
            "sessions": [
                {
                    "sessionId": item.session_id,
                    "nodeAddress": item.node_addr,
                    "createdAt": item.created_at.isoformat(),
                    "expiresAt": item.expires_at.isoformat(),
                }
                for item in self.list_sessions()
            ],
            "forwardedSessions": self.list_forwarded_sessions(),
        }

    def find_split_sessions(self, sessions: list[WsSessionSnapshot]) -> list[tuple[str, str]]:
        """Pairs of (file session, branch session) owned by different nodes."""
        branch_nodes: dict[str, str] = {}
        file_nodes: dict[str, str] = {}
        for item in sessions:
            try:
                _project, _branch, file_id = split_session_id(item.session_id)
            except ValueError as exc:
                logger.error("%s", exc)
                continue
            (file_nodes if file_id else branch_nodes)[item.session_id] = item.node_addr

        split: list[tuple[str, str]] = []
        for file_session_id, node in sorted(file_nodes.items()):
            project_id, branch_name, _file_id = split_session_id(file_session_id)
            branch_session_id = make_branch_session_id(project_id, branch_name)
            branch_node = branch_nodes.get(branch_session_id)
            if branch_node is not None and branch_node != node:
                split.append((file_session_id, branch_session_id))
        return split

    async def handle_bad_sessions(self) -> int:
        sessions = await asyncio.to_thread(self._directory.list_sessions)
        for file_session_id, branch_session_id in self.find_split_sessions(sessions):
            logger.error("Bad ws sessions detected: %s %s", file_session_id, branch_session_id)

        live = {item.session_id for item in sessions}
        closed = 0
        for forwarded in self._forwarder.list_forwarded():
            if forwarded.session_id not in live:
                logger.warning("Closing stale forwarded session %s", forwarded.session_id)
                closed += await self._forwarder.close_forwarded(forwarded.session_id)
        return closed

    async def _maintain_once(self, active_keys: Callable[[], Iterable[str]], *, sweep: bool) -> None:
        await asyncio.to_thread(self._directory.heartbeat_node, self._bind_addr)
        for key in list(active_keys()):
            await asyncio.to_thread(self.track_session, key)
        if sweep:
            removed = await asyncio.to_thread(self._directory.cleanup_expired)
            if removed:
                logger.debug("Removed %d expired ws directory entries", removed)
            await self.handle_bad_sessions()

    async def run_maintenance(
        self,
        stop: asyncio.Event,
        active_keys: Callable[[], Iterable[str]],
    ) -> None:
        """Heartbeat this node, keep local sessions alive and sweep stale entries until ``stop`` is set."""
        interval = float(self._settings.ws_ping_interval_seconds)
        sweep_every = max(1, int(self._settings.ws_sweep_interval_seconds // self._settings.ws_ping_interval_seconds))
        tick = 0
        while not stop.is_set():
            try:
                await self._maintain_once(active_keys, sweep=tick % sweep_every == 0)
            except SQLAlchemyError:
                logger.exception("Ws directory maintenance failed")
            tick += 1
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
