"""Collaborative editing sockets.

The node that owns a session key serves it locally; any other node accepts
the client and bridges it to the owner.
"""

from __future__ import annotations

import asyncio
import logging
from uuid import uuid4

from fastapi import APIRouter, WebSocket

from apihub.api.security import bearer_token, resolve_user_id
from apihub.core.errors import ApiHubError
from apihub.ws.balancer import LOCAL_SERVER, build_redirect_url, make_session_id
from apihub.ws.forwarder import FORWARDED_KEY_HEADER, USER_ID_HEADER
from apihub.ws.runtime import get_load_balancer, get_session_manager, get_ws_forwarder

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ws"])

INTERNAL_ERROR_CLOSE_CODE = 1011


def _token(websocket: WebSocket) -> str | None:
    return bearer_token(websocket.headers.get("authorization")) or websocket.query_params.get("token")


async def serve_edit_session(websocket: WebSocket, project_id: str, branch_name: str, file_id: str | None) -> None:
    balancer = get_load_balancer()
    try:
        session_id = make_session_id(project_id, branch_name, file_id)
        node = await asyncio.to_thread(balancer.select_ws_server, project_id, branch_name, file_id)
    except ApiHubError as exc:
        logger.error("Ws session for %s/%s rejected: %s", project_id, branch_name, exc)
        await websocket.close(code=INTERNAL_ERROR_CLOSE_CODE, reason=exc.code.value)
        return

    forwarded_key = websocket.headers.get(FORWARDED_KEY_HEADER)
    if node != LOCAL_SERVER and forwarded_key:
        # already bridged once; a second hop means ownership moved in between
        logger.warning("Ws session %s moved to %s during redirect", session_id, node)
        await websocket.close(code=INTERNAL_ERROR_CLOSE_CODE, reason="ownership changed")
        return

    await websocket.accept()
    user_id = resolve_user_id(websocket.headers.get(USER_ID_HEADER))
    if node == LOCAL_SERVER:
        await get_session_manager().connect(session_id, str(uuid4()), websocket, user_id)
        return

    target_url = build_redirect_url(node, project_id, branch_name, file_id, _token(websocket))
    await get_ws_forwarder().bridge(
        websocket,
        session_id,
        target_url,
        forwarded_key or websocket.headers.get("sec-websocket-key"),
        user_id,
    )


@router.websocket("/ws/v1/projects/{project_id}/branches/{branch_name}")
async def branch_session(websocket: WebSocket, project_id: str, branch_name: str) -> None:
    await serve_edit_session(websocket, project_id, branch_name, None)


@router.websocket("/ws/v1/projects/{project_id}/branches/{branch_name}/files/{file_id}")
async def file_session(websocket: WebSocket, project_id: str, branch_name: str, file_id: str) -> None:
    await serve_edit_session(websocket, project_id, branch_name, file_id)
