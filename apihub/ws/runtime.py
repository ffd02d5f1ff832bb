from __future__ import annotations

from apihub.core.config import get_settings
from apihub.db.session import get_session_factory
from apihub.ws.balancer import WsLoadBalancer
from apihub.ws.directory import WsSessionDirectory
from apihub.ws.forwarder import WsForwarder
from apihub.ws.sessions import SessionManager

_forwarder: WsForwarder | None = None
_balancer: WsLoadBalancer | None = None
_session_manager: SessionManager | None = None


def get_ws_forwarder() -> WsForwarder:
    global _forwarder
    if _forwarder is None:
        _forwarder = WsForwarder(get_settings())
    return _forwarder


def get_load_balancer() -> WsLoadBalancer:
    global _balancer
    if _balancer is None:
        settings = get_settings()
        _balancer = WsLoadBalancer(
            settings,
            WsSessionDirectory(settings, get_session_factory()),
            get_ws_forwarder(),
        )
    return _balancer


def get_session_manager() -> SessionManager:
    global _session_manager
    if _session_manager is None:
        _session_manager = SessionManager(get_settings(), get_load_balancer())
    return _session_manager


def reset_ws_runtime() -> None:
    global _forwarder, _balancer, _session_manager
    _forwarder = None
    _balancer = None
    _session_manager = None
