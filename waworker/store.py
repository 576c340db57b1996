from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class SessionState(str, Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, eq=False)
class Session:
    """One tenant's live or recently-live WhatsApp connection."""

    tenant_id: str
    state: SessionState = SessionState.IDLE
    credential: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    handle: Optional[Any] = None
    consumer: Optional[asyncio.Task[Any]] = None
    reconnect_task: Optional[asyncio.Task[Any]] = None
    reconnect_attempts: int = 0

    @property
    def connected(self) -> bool:
        return self.state is SessionState.CONNECTED


class SessionStore:
    """Registry of the sessions that exist right now, keyed by tenant id."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def get(self, tenant_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(tenant_id)

    def set(self, tenant_id: str, session: Session) -> None:
        with self._lock:
            self._sessions[tenant_id] = session

    def delete(self, tenant_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.pop(tenant_id, None)

    def size(self) -> int:
        with self._lock:
            return len(self._sessions)

    def snapshot(self) -> List[Session]:
        with self._lock:
            return list(self._sessions.values())

    def __contains__(self, tenant_id: object) -> bool:
        with self._lock:
            return tenant_id in self._sessions


__all__ = ["Session", "SessionState", "SessionStore"]
