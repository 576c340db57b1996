"""Transport boundary: event variants emitted by a WhatsApp connection and the
adapter/handle interfaces the orchestrator drives."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional, Protocol, Union


# Baileys ``DisconnectReason.loggedOut``.
LOGGED_OUT_CODE = 401


class TransportError(Exception):
    """Raised when the transport cannot open or command a session."""


@dataclass(frozen=True, slots=True)
class CredentialIssued:
    value: str


@dataclass(frozen=True, slots=True)
class Opened:
    pass


@dataclass(frozen=True, slots=True)
class Closed:
    code: Optional[int] = None
    terminal: bool = False


@dataclass(frozen=True, slots=True)
class MessageReceived:
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CredentialsUpdated:
    state: Dict[str, Any] = field(default_factory=dict)


TransportEvent = Union[CredentialIssued, Opened, Closed, MessageReceived, CredentialsUpdated]


def is_terminal_close(code: Optional[int]) -> bool:
    return code == LOGGED_OUT_CODE


def closed_event(code: Any, terminal: Optional[bool] = None) -> Closed:
    try:
        status = int(code) if code is not None else None
    except (TypeError, ValueError):
        status = None
    if terminal is None:
        terminal = is_terminal_close(status)
    return Closed(code=status, terminal=bool(terminal))


class TransportHandle(Protocol):
    def events(self) -> AsyncIterator[TransportEvent]:
        ...

    async def logout(self) -> None:
        ...

    async def persist_credentials(self, state: Dict[str, Any]) -> None:
        ...

    async def close(self) -> None:
        ...


class TransportAdapter(Protocol):
    async def open(
        self, tenant_id: str, prior_credentials: Optional[Dict[str, Any]]
    ) -> TransportHandle:
        ...

    async def logout(
        self, tenant_id: str, credentials: Optional[Dict[str, Any]]
    ) -> None:
        """Unlink the device of a tenant that has no open handle."""
        ...


__all__ = [
    "LOGGED_OUT_CODE",
    "TransportError",
    "CredentialIssued",
    "Opened",
    "Closed",
    "MessageReceived",
    "CredentialsUpdated",
    "TransportEvent",
    "TransportHandle",
    "TransportAdapter",
    "is_terminal_close",
    "closed_event",
]
