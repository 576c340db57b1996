"""HTTP client for the WhatsApp Web bridge sidecar.

The sidecar runs the actual WhatsApp Web protocol. It is driven per tenant
through ``/sessions/{tenant}/...`` and streams its socket events back as
newline-delimited JSON.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import quote

import httpx

from .credentials import CredentialStore
from .transport import (
    CredentialIssued,
    CredentialsUpdated,
    MessageReceived,
    Opened,
    TransportError,
    TransportEvent,
    closed_event,
)


LOGGER = logging.getLogger("waworker.bridge")


def parse_bridge_event(payload: Dict[str, Any]) -> List[TransportEvent]:
    kind = str(payload.get("type") or "").strip().lower()
    if kind == "qr":
        value = payload.get("qr")
        return [CredentialIssued(str(value))] if value else []
    if kind == "open":
        return [Opened()]
    if kind == "close":
        return [closed_event(payload.get("code"), payload.get("terminal"))]
    if kind in {"messages", "message"}:
        messages = payload.get("messages")
        if messages is None:
            messages = [payload.get("message")]
        return [MessageReceived(raw) for raw in messages if isinstance(raw, dict)]
    if kind == "creds":
        state = payload.get("state")
        return [CredentialsUpdated(state)] if isinstance(state, dict) else []
    LOGGER.warning("event=bridge_unknown_event type=%s", kind or "<empty>")
    return []


class BridgeHandle:
    def __init__(
        self,
        tenant_id: str,
        base_url: str,
        http: httpx.AsyncClient,
        credentials: CredentialStore,
    ) -> None:
        self.tenant_id = tenant_id
        self._session_url = f"{base_url}/sessions/{quote(str(tenant_id), safe='')}"
        self._http = http
        self._credentials = credentials
        self._closed = False

    async def events(self) -> AsyncIterator[TransportEvent]:
        async with self._http.stream("GET", f"{self._session_url}/events", timeout=None) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                if self._closed:
                    return
                line = line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except ValueError:
                    LOGGER.warning(
                        "event=bridge_bad_line tenant_id=%s line=%.80s", self.tenant_id, line
                    )
                    continue
                if not isinstance(payload, dict):
                    continue
                for event in parse_bridge_event(payload):
                    yield event

    async def logout(self) -> None:
        try:
            response = await self._http.post(f"{self._session_url}/logout")
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise TransportError(f"logout_failed: {exc}") from exc

    async def persist_credentials(self, state: Dict[str, Any]) -> None:
        self._credentials.save(self.tenant_id, state)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._http.delete(self._session_url)
        except httpx.HTTPError as exc:
            LOGGER.warning(
                "event=bridge_release_failed tenant_id=%s error=%s", self.tenant_id, exc
            )


class BridgeTransport:
    """``TransportAdapter`` backed by the bridge sidecar."""

    def __init__(
        self,
        base_url: str,
        credentials: CredentialStore,
        *,
        http: Optional[httpx.AsyncClient] = None,
        http_timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._credentials = credentials
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=http_timeout)

    async def open(
        self, tenant_id: str, prior_credentials: Optional[Dict[str, Any]]
    ) -> BridgeHandle:
        handle = BridgeHandle(tenant_id, self._base_url, self._http, self._credentials)
        try:
            response = await self._http.post(
                f"{handle._session_url}/start",
                json={"credentials": prior_credentials},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise TransportError(f"open_failed: {exc}") from exc
        LOGGER.info(
            "stage=bridge_open tenant_id=%s resumed=%s",
            tenant_id,
            "true" if prior_credentials else "false",
        )
        return handle

    async def logout(
        self, tenant_id: str, credentials: Optional[Dict[str, Any]]
    ) -> None:
        url = f"{self._base_url}/sessions/{quote(str(tenant_id), safe='')}/logout"
        try:
            response = await self._http.post(url, json={"credentials": credentials})
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise TransportError(f"logout_failed: {exc}") from exc
        LOGGER.info("stage=bridge_logout tenant_id=%s detached=true", tenant_id)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()


__all__ = ["BridgeTransport", "BridgeHandle", "parse_bridge_event"]
