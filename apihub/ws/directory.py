"""Cluster-wide directory of edit sessions and live nodes.

Every node shares the same database, so ownership of a session id is a row in
``ws_sessions`` with an expiry. Inserting the row is the claim: the primary key
turns concurrent claims into a single winner.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from apihub.core.config import Settings
from apihub.db.models import WsNode, WsSession

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WsSessionSnapshot:
    session_id: str
    node_addr: str
    created_at: datetime
    expires_at: datetime


class WsSessionDirectory:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _coerce_utc(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _session_expiry(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self._settings.ws_session_ttl_seconds)

    def get_owner(self, session_id: str) -> str | None:
        now = self._now()
        with self._session_factory() as session:
            row = session.get(WsSession, session_id)
            if row is None or self._coerce_utc(row.expires_at) <= now:
                return None
            return row.node_addr

    def put_if_absent(self, session_id: str, node_addr: str) -> bool:
        """Claim ``session_id`` for ``node_addr``; False when another live owner holds it."""
        now = self._now()
        with self._session_factory() as session:
            session.execute(
                delete(WsSession).where(WsSession.session_id == session_id, WsSession.expires_at <= now)
            )
            session.add(
                WsSession(
                    session_id=session_id,
                    node_addr=node_addr,
                    created_at=now,
                    expires_at=self._session_expiry(now),
                )
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            logger.debug("Node %s claimed ws session %s", node_addr, session_id)
            return True

    def refresh(self, session_id: str, node_addr: str) -> bool:
        """Extend the TTL of a session owned by ``node_addr``, claiming it when it lapsed."""
        now = self._now()
        with self._session_factory() as session:
            row = session.get(WsSession, session_id)
            if row is not None and row.node_addr == node_addr:
                row.expires_at = self._session_expiry(now)
                session.commit()
                return True
            if row is not None and self._coerce_utc(row.expires_at) > now:
                logger.warning("Ws session %s is owned by %s, not %s", session_id, row.node_addr, node_addr)
                return False
        return self.put_if_absent(session_id, node_addr)

    def release(self, session_id: str, node_addr: str) -> bool:
        with self._session_factory() as session:
            result = session.execute(
                delete(WsSession).where(WsSession.session_id == session_id, WsSession.node_addr == node_addr)
            )
            session.commit()
            return bool(result.rowcount)

    def find_by_prefix(self, prefix: str) -> list[WsSessionSnapshot]:
        now = self._now()
        with self._session_factory() as session:
            rows = session.scalars(
                select(WsSession)
                .where(WsSession.session_id.startswith(prefix, autoescape=True), WsSession.expires_at > now)
                .order_by(WsSession.created_at.asc(), WsSession.session_id.asc())
            ).all()
            return [self._to_snapshot(row) for row in rows]

    def list_sessions(self) -> list[WsSessionSnapshot]:
        now = self._now()
        with self._session_factory() as session:
            rows = session.scalars(
                select(WsSession).where(WsSession.expires_at > now).order_by(WsSession.session_id.asc())
            ).all()
            return [self._to_snapshot(row) for row in rows]

    def heartbeat_node(self, node_addr: str) -> None:
        now = self._now()
        expires_at = now + timedelta(seconds=self._settings.ws_node_ttl_seconds)
        with self._session_factory() as session:
            node = session.get(WsNode, node_addr)
            if node is None:
                session.add(WsNode(node_addr=node_addr, heartbeat_at=now, expires_at=expires_at))
                try:
                    session.commit()
                    return
                except IntegrityError:
                    session.rollback()
                node = session.get(WsNode, node_addr)
                if node is None:
                    raise RuntimeError(f"node {node_addr} vanished during registration")
            node.heartbeat_at = now
            node.expires_at = expires_at
            session.commit()

    def list_nodes(self) -> list[str]:
        now = self._now()
        with self._session_factory() as session:
            return list(
                session.scalars(
                    select(WsNode.node_addr).where(WsNode.expires_at > now).order_by(WsNode.node_addr.asc())
                ).all()
            )

    def cleanup_expired(self) -> int:
        now = self._now()
        with self._session_factory() as session:
            sessions = session.execute(delete(WsSession).where(WsSession.expires_at <= now))
            nodes = session.execute(delete(WsNode).where(WsNode.expires_at <= now))
            session.commit()
            return int(sessions.rowcount or 0) + int(nodes.rowcount or 0)

    def _to_snapshot(self, row: WsSession) -> WsSessionSnapshot:
        return WsSessionSnapshot(
            session_id=row.session_id,
            node_addr=row.node_addr,
            created_at=self._coerce_utc(row.created_at),
            expires_at=self._coerce_utc(row.expires_at),
        )
