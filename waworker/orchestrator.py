from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional, Protocol

from .credentials import CredentialStore
from .metrics import (
    WA_CLOSE_TOTAL,
    WA_LOGIN_SUCCESS_TOTAL,
    WA_QR_ISSUED_TOTAL,
    WA_RECONNECT_TOTAL,
    WA_SESSIONS,
    WA_STATUS_WRITE_FAILURES_TOTAL,
)
from .qr_wait import CredentialWaitHandle
from .store import Session, SessionState, SessionStore
from .transport import (
    Closed,
    CredentialIssued,
    CredentialsUpdated,
    MessageReceived,
    Opened,
    TransportAdapter,
    TransportEvent,
    TransportHandle,
)


LOGGER = logging.getLogger("waworker")

RECONNECT_DELAY = 5.0
STATUS_CONNECTED = "connected"


class StatusStore(Protocol):
    async def set_status(self, tenant_id: str, value: str, updated_at: datetime) -> None:
        ...

    async def clear_status(self, tenant_id: str) -> None:
        ...


class Forwarder(Protocol):
    async def forward(self, tenant_id: str, raw: Dict[str, Any]) -> bool:
        ...


@dataclass(slots=True)
class SessionStatus:
    """Point-in-time view of a tenant's session for status queries."""

    tenant_id: str
    present: bool
    state: Optional[str] = None
    connected: bool = False
    has_credential_pending: bool = False
    created_at: Optional[datetime] = None
    reconnect_attempts: int = 0

    @classmethod
    def from_session(cls, tenant_id: str, session: Optional[Session]) -> "SessionStatus":
        if session is None:
            return cls(tenant_id=tenant_id, present=False)
        return cls(
            tenant_id=tenant_id,
            present=True,
            state=session.state.value,
            connected=session.connected,
            has_credential_pending=bool(session.credential),
            created_at=session.created_at,
            reconnect_attempts=session.reconnect_attempts,
        )

    def to_payload(self) -> dict[str, Any]:
        if not self.present:
            return {"connected": False}
        return {
            "connected": self.connected,
            "has_qr": self.has_credential_pending,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "state": self.state,
            "reconnect_attempts": self.reconnect_attempts,
        }


class SessionOrchestrator:
    """Drive tenant-scoped WhatsApp sessions through their lifecycle.

    Every session gets one consumer task reading its transport's event stream,
    so events of a tenant are handled in emission order while tenants proceed
    independently. Establishment, termination and the delayed reconnect of a
    tenant are serialized by a per-tenant lock.
    """

    def __init__(
        self,
        store: SessionStore,
        transport: TransportAdapter,
        forwarder: Forwarder,
        status_store: StatusStore,
        *,
        credentials: Optional[CredentialStore] = None,
        reconnect_delay: float = RECONNECT_DELAY,
    ) -> None:
        self._store = store
        self._transport = transport
        self._forwarder = forwarder
        self._status_store = status_store
        self._credentials = credentials
        self._reconnect_delay = reconnect_delay
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @property
    def store(self) -> SessionStore:
        return self._store

    @contextlib.asynccontextmanager
    async def _tenant_lock(self, tenant_id: str) -> AsyncIterator[None]:
        """Hold the tenant's lock; it is dropped once nobody holds or awaits it."""
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[tenant_id] = lock
        self._lock_users[tenant_id] = self._lock_users.get(tenant_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[tenant_id] - 1
            if remaining:
                self._lock_users[tenant_id] = remaining
            else:
                del self._lock_users[tenant_id]
                del self._locks[tenant_id]

    def _set_state(
        self, session: Session, state: SessionState, *, reason: str | None = None
    ) -> None:
        previous = session.state
        if previous is not state:
            LOGGER.info(
                "stage=state_transition tenant_id=%s from=%s to=%s reason=%s",
                session.tenant_id,
                previous.value,
                state.value,
                reason or "-",
            )
        session.state = state

    def _is_current(self, session: Session, handle: TransportHandle) -> bool:
        return self._store.get(session.tenant_id) is session and session.handle is handle

    async def establish(self, tenant_id: str) -> CredentialWaitHandle:
        async with self._tenant_lock(tenant_id):
            session = self._store.get(tenant_id)
            if session is not None:
                if session.state is SessionState.CONNECTED:
                    LOGGER.info("stage=establish_skip tenant_id=%s reason=connected", tenant_id)
                    return CredentialWaitHandle(tenant_id, self._store, already_connected=True)
                if session.state is SessionState.AUTHENTICATING and session.handle is not None:
                    LOGGER.info(
                        "stage=establish_skip tenant_id=%s reason=authenticating", tenant_id
                    )
                    return CredentialWaitHandle(tenant_id, self._store)
            else:
                session = Session(tenant_id=tenant_id)
                self._store.set(tenant_id, session)
            self._cancel_reconnect(session)
            await self._open_locked(session, reason="establish")
            self._update_metrics()
        return CredentialWaitHandle(tenant_id, self._store)

    async def _open_locked(self, session: Session, *, reason: str) -> None:
        tenant_id = session.tenant_id
        self._set_state(session, SessionState.AUTHENTICATING, reason=reason)
        session.credential = None
        prior = self._credentials.load(tenant_id) if self._credentials else None
        try:
            handle = await self._transport.open(tenant_id, prior)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning(
                "stage=open_failed tenant_id=%s error=%s retry_in=%.1f",
                tenant_id,
                exc,
                self._reconnect_delay,
            )
            self._schedule_reconnect(session, reason="open_failed")
            return
        session.handle = handle
        session.consumer = asyncio.create_task(
            self._consume(session, handle), name=f"wa-session-{tenant_id}"
        )

    def _schedule_reconnect(self, session: Session, *, reason: str) -> None:
        self._set_state(session, SessionState.RECONNECTING, reason=reason)
        session.reconnect_task = asyncio.create_task(
            self._reconnect_later(session), name=f"wa-reconnect-{session.tenant_id}"
        )

    def _cancel_reconnect(self, session: Session) -> None:
        task = session.reconnect_task
        session.reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _reconnect_later(self, session: Session) -> None:
        tenant_id = session.tenant_id
        await asyncio.sleep(self._reconnect_delay)
        async with self._tenant_lock(tenant_id):
            if (
                self._store.get(tenant_id) is not session
                or session.state is not SessionState.RECONNECTING
            ):
                LOGGER.info("stage=reconnect_skip tenant_id=%s", tenant_id)
                return
            session.reconnect_task = None
            session.reconnect_attempts += 1
            WA_RECONNECT_TOTAL.inc()
            LOGGER.info(
                "stage=reconnect tenant_id=%s attempt=%s",
                tenant_id,
                session.reconnect_attempts,
            )
            await self._open_locked(session, reason="reconnect")
            self._update_metrics()

    async def _consume(self, session: Session, handle: TransportHandle) -> None:
        tenant_id = session.tenant_id
        events = handle.events()
        try:
            async for event in events:
                if not self._is_current(session, handle):
                    break
                try:
                    await self._dispatch(session, handle, event)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    LOGGER.exception(
                        "stage=event_dispatch_error tenant_id=%s type=%s",
                        tenant_id,
                        type(event).__name__,
                    )
                if not self._is_current(session, handle):
                    break
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("stage=event_stream_error tenant_id=%s", tenant_id)
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                with contextlib.suppress(Exception):
                    await aclose()

        if self._is_current(session, handle):
            LOGGER.warning("stage=event_stream_ended tenant_id=%s", tenant_id)
            await self._handle_closed(session, handle, Closed(code=None, terminal=False))

    async def _dispatch(
        self, session: Session, handle: TransportHandle, event: TransportEvent
    ) -> None:
        if isinstance(event, CredentialIssued):
            session.credential = event.value
            WA_QR_ISSUED_TOTAL.inc()
            LOGGER.info("stage=qr_issued tenant_id=%s", session.tenant_id)
        elif isinstance(event, Opened):
            await self._handle_opened(session)
        elif isinstance(event, Closed):
            await self._handle_closed(session, handle, event)
        elif isinstance(event, MessageReceived):
            await self._handle_message(session, event.raw)
        elif isinstance(event, CredentialsUpdated):
            try:
                await handle.persist_credentials(event.state)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.warning(
                    "event=creds_persist_failed tenant_id=%s error=%s",
                    session.tenant_id,
                    exc,
                )
        else:
            LOGGER.warning(
                "event=unknown_transport_event tenant_id=%s type=%s",
                session.tenant_id,
                type(event).__name__,
            )

    async def _handle_opened(self, session: Session) -> None:
        self._set_state(session, SessionState.CONNECTED, reason="open")
        session.credential = None
        session.reconnect_attempts = 0
        WA_LOGIN_SUCCESS_TOTAL.inc()
        self._update_metrics()
        await self._write_status(session.tenant_id)

    async def _handle_closed(
        self, session: Session, handle: TransportHandle, event: Closed
    ) -> None:
        tenant_id = session.tenant_id
        async with self._tenant_lock(tenant_id):
            if not self._is_current(session, handle):
                return
            session.handle = None
            reason = f"close_{event.code}" if event.code is not None else "close"
            if event.terminal:
                WA_CLOSE_TOTAL.labels("terminal").inc()
                self._set_state(session, SessionState.CLOSED, reason=reason)
                self._store.delete(tenant_id)
                if self._credentials is not None:
                    self._credentials.remove(tenant_id)
            else:
                WA_CLOSE_TOTAL.labels("transient").inc()
                self._schedule_reconnect(session, reason=reason)
            self._update_metrics()
        LOGGER.warning(
            "stage=connection_closed tenant_id=%s code=%s terminal=%s",
            tenant_id,
            event.code,
            event.terminal,
        )
        await self._release(tenant_id, handle)
        if event.terminal:
            await self._clear_status(tenant_id)

    async def _handle_message(self, session: Session, raw: Dict[str, Any]) -> None:
        key = raw.get("key") or {}
        if not isinstance(key, dict):
            LOGGER.warning("event=message_bad_key tenant_id=%s", session.tenant_id)
            return
        if key.get("fromMe") or not raw.get("message"):
            return
        try:
            await self._forwarder.forward(session.tenant_id, raw)
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("stage=forward_error tenant_id=%s", session.tenant_id)

    async def terminate(self, tenant_id: str) -> bool:
        handle: Optional[TransportHandle] = None
        consumer: Optional[asyncio.Task[Any]] = None
        stored: Optional[Dict[str, Any]] = None
        async with self._tenant_lock(tenant_id):
            session = self._store.delete(tenant_id)
            if session is not None:
                self._set_state(session, SessionState.CLOSED, reason="manual_logout")
                self._cancel_reconnect(session)
                handle, session.handle = session.handle, None
                consumer, session.consumer = session.consumer, None
                if self._credentials is not None:
                    stored = self._credentials.load(tenant_id)
                    self._credentials.remove(tenant_id)
            self._update_metrics()

        if session is None:
            LOGGER.info("stage=terminate_noop tenant_id=%s", tenant_id)
        else:
            try:
                if handle is not None:
                    await handle.logout()
                else:
                    # Between connections: unlink without reopening the session.
                    await self._transport.logout(tenant_id, stored)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.warning("stage=logout_failed tenant_id=%s error=%s", tenant_id, exc)
            await self._stop_consumer(consumer)
            if handle is not None:
                await self._release(tenant_id, handle)
            LOGGER.info("stage=logout tenant_id=%s", tenant_id)
        await self._clear_status(tenant_id)
        return session is not None

    async def _stop_consumer(self, task: Optional[asyncio.Task[Any]]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _release(self, tenant_id: str, handle: TransportHandle) -> None:
        try:
            await handle.close()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("stage=release_failed tenant_id=%s error=%s", tenant_id, exc)

    async def _write_status(self, tenant_id: str) -> None:
        try:
            await self._status_store.set_status(
                tenant_id, STATUS_CONNECTED, datetime.now(timezone.utc)
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            WA_STATUS_WRITE_FAILURES_TOTAL.labels("set").inc()
            LOGGER.warning("stage=status_write_failed tenant_id=%s error=%s", tenant_id, exc)

    async def _clear_status(self, tenant_id: str) -> None:
        try:
            await self._status_store.clear_status(tenant_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            WA_STATUS_WRITE_FAILURES_TOTAL.labels("clear").inc()
            LOGGER.warning("stage=status_clear_failed tenant_id=%s error=%s", tenant_id, exc)

    def status(self, tenant_id: str) -> SessionStatus:
        return SessionStatus.from_session(tenant_id, self._store.get(tenant_id))

    def stats_snapshot(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in SessionState}
        sessions = self._store.snapshot()
        for session in sessions:
            counts[session.state.value] += 1
        counts["total"] = len(sessions)
        return counts

    def _update_metrics(self) -> None:
        for state, count in self.stats_snapshot().items():
            if state != "total":
                WA_SESSIONS.labels(state).set(count)

    async def shutdown(self) -> None:
        for session in self._store.snapshot():
            self._cancel_reconnect(session)
            handle, session.handle = session.handle, None
            consumer, session.consumer = session.consumer, None
            await self._stop_consumer(consumer)
            if handle is not None:
                await self._release(session.tenant_id, handle)
            self._store.delete(session.tenant_id)
        self._update_metrics()


__all__ = [
    "SessionOrchestrator",
    "SessionStatus",
    "StatusStore",
    "RECONNECT_DELAY",
    "STATUS_CONNECTED",
]
