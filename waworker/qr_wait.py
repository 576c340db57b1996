"""Bounded polling for the pairing QR of a session.

The orchestrator writes the latest QR into ``Session.credential`` whenever the
transport issues one. Request handlers poll that slot here instead of waiting on
the orchestrator, so any number of callers for the same tenant see the same
value and the event consumers never block on a caller.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .store import SessionState, SessionStore


LOGGER = logging.getLogger("waworker.qr_wait")

DEFAULT_POLL_INTERVAL = 0.1
DEFAULT_MAX_ATTEMPTS = 300


class CredentialTimeout(Exception):
    """Raised when no QR appeared within the polling budget."""

    def __init__(self, tenant_id: str, waited: float) -> None:
        super().__init__("qr_timeout")
        self.tenant_id = tenant_id
        self.waited = waited


@dataclass(frozen=True, slots=True)
class CredentialResult:
    tenant_id: str
    credential: Optional[str] = None
    already_connected: bool = False

    def to_payload(self) -> Dict[str, Any]:
        if self.already_connected:
            return {"success": True, "connected": True, "message": "already_connected"}
        return {"success": True, "qr_code": self.credential, "message": "qr_generated"}


async def await_credential(
    store: SessionStore,
    tenant_id: str,
    *,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> CredentialResult:
    session = store.get(tenant_id)
    if session is not None and session.state is SessionState.CONNECTED:
        return CredentialResult(tenant_id, already_connected=True)

    for attempt in range(max_attempts + 1):
        if attempt:
            await asyncio.sleep(poll_interval)
        session = store.get(tenant_id)
        if session is None:
            continue
        if session.credential:
            LOGGER.debug(
                "stage=qr_ready tenant_id=%s attempts=%s", tenant_id, attempt
            )
            return CredentialResult(tenant_id, credential=session.credential)
        if session.state is SessionState.CONNECTED:
            return CredentialResult(tenant_id, already_connected=True)

    waited = poll_interval * max_attempts
    LOGGER.warning("stage=qr_timeout tenant_id=%s waited=%.1f", tenant_id, waited)
    raise CredentialTimeout(tenant_id, waited)


@dataclass(frozen=True, slots=True)
class CredentialWaitHandle:
    """Returned by ``SessionOrchestrator.establish``."""

    tenant_id: str
    store: SessionStore
    already_connected: bool = False

    async def wait(
        self,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> CredentialResult:
        if self.already_connected:
            return CredentialResult(self.tenant_id, already_connected=True)
        return await await_credential(
            self.store,
            self.tenant_id,
            poll_interval=poll_interval,
            max_attempts=max_attempts,
        )


__all__ = [
    "CredentialTimeout",
    "CredentialResult",
    "CredentialWaitHandle",
    "await_credential",
    "DEFAULT_POLL_INTERVAL",
    "DEFAULT_MAX_ATTEMPTS",
]
