from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import pytest

from waworker.orchestrator import SessionOrchestrator
from waworker.store import SessionStore
from waworker.transport import TransportError, TransportEvent


class FakeHandle:
    def __init__(self, tenant_id: str) -> None:
        self.tenant_id = tenant_id
        self.queue: asyncio.Queue[Optional[TransportEvent]] = asyncio.Queue()
        self.logout_calls = 0
        self.fail_logout = False
        self.closed = False
        self.persisted: List[Dict[str, Any]] = []

    async def events(self):
        while True:
            event = await self.queue.get()
            if event is None:
                return
            yield event

    def emit(self, event: TransportEvent) -> None:
        self.queue.put_nowait(event)

    def end_stream(self) -> None:
        self.queue.put_nowait(None)

    async def logout(self) -> None:
        self.logout_calls += 1
        if self.fail_logout:
            raise TransportError("logout_failed")

    async def persist_credentials(self, state: Dict[str, Any]) -> None:
        self.persisted.append(state)

    async def close(self) -> None:
        self.closed = True
        self.queue.put_nowait(None)


class FakeTransport:
    def __init__(self) -> None:
        self.handles: List[FakeHandle] = []
        self.open_calls: List[Tuple[str, Optional[Dict[str, Any]]]] = []
        self.open_times: List[float] = []
        self.open_delay = 0.0
        self.fail_opens = 0
        self.detached_logouts: List[Tuple[str, Optional[Dict[str, Any]]]] = []

    async def logout(self, tenant_id: str, credentials: Optional[Dict[str, Any]]) -> None:
        self.detached_logouts.append((tenant_id, credentials))

    async def open(self, tenant_id: str, prior_credentials: Optional[Dict[str, Any]]):
        self.open_calls.append((tenant_id, prior_credentials))
        self.open_times.append(asyncio.get_running_loop().time())
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.fail_opens > 0:
            self.fail_opens -= 1
            raise TransportError("bridge_unavailable")
        handle = FakeHandle(tenant_id)
        self.handles.append(handle)
        return handle

    def latest(self, tenant_id: str) -> FakeHandle:
        return [handle for handle in self.handles if handle.tenant_id == tenant_id][-1]

    def count(self, tenant_id: str) -> int:
        return sum(1 for handle in self.handles if handle.tenant_id == tenant_id)


class RecordingStatusStore:
    def __init__(self) -> None:
        self.set_calls: List[Tuple[str, str, datetime]] = []
        self.cleared: List[str] = []
        self.fail = False

    async def set_status(self, tenant_id: str, value: str, updated_at: datetime) -> None:
        if self.fail:
            raise RuntimeError("database down")
        self.set_calls.append((tenant_id, value, updated_at))

    async def clear_status(self, tenant_id: str) -> None:
        if self.fail:
            raise RuntimeError("database down")
        self.cleared.append(tenant_id)


class RecordingForwarder:
    def __init__(self) -> None:
        self.forwarded: List[Tuple[str, Dict[str, Any]]] = []
        self.failing_tenants: set[str] = set()

    async def forward(self, tenant_id: str, raw: Dict[str, Any]) -> bool:
        if tenant_id in self.failing_tenants:
            raise RuntimeError("webhook unreachable")
        self.forwarded.append((tenant_id, raw))
        return True


async def _wait_until(predicate, timeout: float = 2.0, step: float = 0.005) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(step)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def status_store() -> RecordingStatusStore:
    return RecordingStatusStore()


@pytest.fixture
def forwarder() -> RecordingForwarder:
    return RecordingForwarder()


@pytest.fixture
def make_orchestrator(transport, status_store, forwarder):
    def _factory(*, reconnect_delay: float = 0.05, credentials=None) -> SessionOrchestrator:
        return SessionOrchestrator(
            SessionStore(),
            transport,
            forwarder,
            status_store,
            credentials=credentials,
            reconnect_delay=reconnect_delay,
        )

    return _factory


@pytest.fixture
def wait_until():
    return _wait_until
