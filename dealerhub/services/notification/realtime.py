"""Realtime session registry for connected operators.

One registry instance is created per process and injected into the
dispatcher and the websocket endpoint. Sends are spawned as tracked tasks so a
slow or dead transport never blocks the caller.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import uuid4

from dealerhub.common.errors import AuthError
from dealerhub.common.identity import IdentityVerifier, Principal
from dealerhub.common.logging import logger
from dealerhub.common.metrics import realtime_handshakes_total, realtime_send_failures_total, realtime_sessions


class Transport(Protocol):
    async def send_json(self, data: Any) -> None: ...


@dataclass(eq=False)
class RealtimeSession:
    principal_id: str
    role: str
    transport: Transport
    session_id: str = field(default_factory=lambda: str(uuid4()))


class RealtimeSessionRegistry:
    """Tracks at most one live session per operator principal."""

    def __init__(self, verifier: IdentityVerifier, send_timeout: float = 5.0) -> None:
        self.verifier = verifier
        self.send_timeout = send_timeout
        self._sessions: dict[str, RealtimeSession] = {}
        self._pending: set[asyncio.Task] = set()

    def authenticate(self, credential: str | None) -> Principal:
        """Resolve a handshake credential; only operator-class roles pass."""

        try:
            principal = self.verifier.verify(credential)
        except AuthError as exc:
            realtime_handshakes_total.labels(result="invalid").inc()
            logger.warning("realtime handshake rejected reason=%s", exc)
            raise
        if not principal.is_operator:
            realtime_handshakes_total.labels(result="forbidden").inc()
            logger.warning(
                "realtime handshake rejected principal_id=%s role=%s", principal.principal_id, principal.role.value
            )
            raise AuthError("Admin access required")
        realtime_handshakes_total.labels(result="accepted").inc()
        return principal

    def register(self, session: RealtimeSession) -> None:
        previous = self._sessions.get(session.principal_id)
        self._sessions[session.principal_id] = session
        realtime_sessions.set(len(self._sessions))
        logger.info(
            "operator connected principal_id=%s role=%s replaced=%s total_connected=%s",
            session.principal_id,
            session.role,
            previous is not None,
            len(self._sessions),
        )

    def unregister(self, principal_id: str, session: RealtimeSession | None = None) -> bool:
        """Drop the principal's entry; with `session`, only if it is still the registered one."""

        current = self._sessions.get(principal_id)
        if current is None or (session is not None and current is not session):
            return False
        del self._sessions[principal_id]
        realtime_sessions.set(len(self._sessions))
        logger.info("operator disconnected principal_id=%s total_connected=%s", principal_id, len(self._sessions))
        return True

    def connected_count(self) -> int:
        return len(self._sessions)

    def is_connected(self, principal_id: str) -> bool:
        return principal_id in self._sessions

    def broadcast(self, event: dict[str, Any]) -> int:
        """Schedule `event` to every session; returns how many sends were started."""

        sessions = list(self._sessions.values())
        for session in sessions:
            self._spawn(session, event)
        if sessions:
            logger.info("realtime broadcast event=%s sessions=%s", event.get("event"), len(sessions))
        return len(sessions)

    def send_to(self, principal_id: str, event: dict[str, Any]) -> bool:
        session = self._sessions.get(principal_id)
        if session is None:
            return False
        self._spawn(session, event)
        return True

    async def flush(self) -> None:
        """Wait for in-flight sends (shutdown and tests)."""

        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _spawn(self, session: RealtimeSession, event: dict[str, Any]) -> None:
        task = asyncio.create_task(self._send(session, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, session: RealtimeSession, event: dict[str, Any]) -> None:
        try:
            await asyncio.wait_for(session.transport.send_json(event), timeout=self.send_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            realtime_send_failures_total.inc()
            logger.warning(
                "realtime send failed principal_id=%s session_id=%s error=%r",
                session.principal_id,
                session.session_id,
                exc,
            )
            self.unregister(session.principal_id, session)
