from __future__ import annotations

import json

import httpx
import pytest

from waworker.bridge import BridgeTransport, parse_bridge_event
from waworker.credentials import CredentialStore
from waworker.transport import (
    Closed,
    CredentialIssued,
    CredentialsUpdated,
    MessageReceived,
    Opened,
    TransportError,
)


def test_parse_bridge_event_variants() -> None:
    assert parse_bridge_event({"type": "qr", "qr": "2@abc"}) == [CredentialIssued("2@abc")]
    assert parse_bridge_event({"type": "open"}) == [Opened()]
    assert parse_bridge_event({"type": "close", "code": 401}) == [Closed(code=401, terminal=True)]
    assert parse_bridge_event({"type": "close", "code": "428"}) == [Closed(code=428, terminal=False)]
    assert parse_bridge_event({"type": "close", "code": 500, "terminal": True}) == [
        Closed(code=500, terminal=True)
    ]
    messages = parse_bridge_event({"type": "messages", "messages": [{"key": {}}, "junk"]})
    assert messages == [MessageReceived({"key": {}})]
    assert parse_bridge_event({"type": "creds", "state": {"me": 1}}) == [
        CredentialsUpdated({"me": 1})
    ]
    assert parse_bridge_event({"type": "presence"}) == []
    assert parse_bridge_event({"type": "qr"}) == []


@pytest.mark.anyio
async def test_bridge_open_stream_and_commands(tmp_path) -> None:
    requests: list[tuple[str, str, bytes]] = []
    stream = "\n".join(
        [
            json.dumps({"type": "qr", "qr": "2@abc"}),
            "",
            "not-json",
            json.dumps({"type": "open"}),
            json.dumps({"type": "close", "code": 428}),
        ]
    )

    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append((request.method, request.url.path, request.content))
        if request.url.path.endswith("/events"):
            return httpx.Response(200, content=stream.encode("utf-8"))
        return httpx.Response(200, json={"ok": True})

    credentials = CredentialStore(tmp_path)
    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler)) as http:
        transport = BridgeTransport("http://waweb.test/", credentials, http=http)
        handle = await transport.open("tenant-1", {"creds": {"me": "x"}})
        events = [event async for event in handle.events()]
        await handle.persist_credentials({"creds": {"me": "y"}})
        await handle.logout()
        await handle.close()
        await handle.close()

    assert events == [CredentialIssued("2@abc"), Opened(), Closed(code=428, terminal=False)]
    method, path, body = requests[0]
    assert (method, path) == ("POST", "/sessions/tenant-1/start")
    assert json.loads(body) == {"credentials": {"creds": {"me": "x"}}}
    assert [(m, p) for m, p, _ in requests[1:]] == [
        ("GET", "/sessions/tenant-1/events"),
        ("POST", "/sessions/tenant-1/logout"),
        ("DELETE", "/sessions/tenant-1"),
    ]
    assert credentials.load("tenant-1") == {"creds": {"me": "y"}}


@pytest.mark.anyio
async def test_bridge_open_failure_raises_transport_error(tmp_path) -> None:
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(503))
    ) as http:
        transport = BridgeTransport("http://waweb.test", CredentialStore(tmp_path), http=http)
        with pytest.raises(TransportError):
            await transport.open("t1", None)


@pytest.mark.anyio
async def test_bridge_logout_failure_raises_transport_error(tmp_path) -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/logout"):
            return httpx.Response(502)
        return httpx.Response(200)

    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler)) as http:
        transport = BridgeTransport("http://waweb.test", CredentialStore(tmp_path), http=http)
        handle = await transport.open("t1", None)
        with pytest.raises(TransportError):
            await handle.logout()


@pytest.mark.anyio
async def test_bridge_detached_logout_sends_stored_credentials(tmp_path) -> None:
    requests = []

    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append((request.method, request.url.path, json.loads(request.content)))
        return httpx.Response(200)

    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler)) as http:
        transport = BridgeTransport("http://waweb.test", CredentialStore(tmp_path), http=http)
        await transport.logout("tenant-1", {"creds": {"me": "x"}})

    assert requests == [
        ("POST", "/sessions/tenant-1/logout", {"credentials": {"creds": {"me": "x"}}})
    ]
