from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from .metrics import WA_FORWARD_FAILURES_TOTAL, WA_FORWARDED_TOTAL


LOGGER = logging.getLogger("waworker.forwarder")

MEDIA_PLACEHOLDER = "[media]"
DEFAULT_CONTENT_TYPE = "text"


def digits_only(value: str) -> str:
    return re.sub(r"\D", "", value or "")


def _coerce_timestamp(raw: Any) -> int:
    # protobuf Long values arrive as {"low": ..., "high": ..., "unsigned": ...}
    if isinstance(raw, dict):
        low = raw.get("low") or 0
        high = raw.get("high") or 0
        try:
            return (int(high) << 32) + (int(low) & 0xFFFFFFFF)
        except (TypeError, ValueError):
            return 0
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True, slots=True)
class InboundMessage:
    id: str
    sender: str
    timestamp: int
    body: str
    content_type: str

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "InboundMessage":
        key = raw.get("key") or {}
        remote_jid = str(key.get("remoteJid") or "")
        content = raw.get("message") or {}
        extended = content.get("extendedTextMessage") or {}
        body = content.get("conversation") or extended.get("text") or MEDIA_PLACEHOLDER
        content_type = next(iter(content), DEFAULT_CONTENT_TYPE)
        return cls(
            id=str(key.get("id") or ""),
            sender=digits_only(remote_jid.split("@", 1)[0]),
            timestamp=_coerce_timestamp(raw.get("messageTimestamp")),
            body=str(body),
            content_type=str(content_type),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "from": self.sender,
            "timestamp": self.timestamp,
            "body": self.body,
            "type": self.content_type,
        }


class MessageForwarder:
    """Deliver inbound messages to the application webhook, best-effort."""

    def __init__(
        self,
        webhook_url: str,
        *,
        webhook_token: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
        http_timeout: float = 10.0,
    ) -> None:
        self._webhook_url = webhook_url.rstrip("/")
        self._webhook_token = (webhook_token or "").strip() or None
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=http_timeout)

    async def forward(self, tenant_id: str, raw: Dict[str, Any]) -> bool:
        try:
            message = InboundMessage.from_raw(raw)
        except (AttributeError, TypeError, ValueError) as exc:
            WA_FORWARD_FAILURES_TOTAL.labels("normalize").inc()
            LOGGER.error("stage=normalize_fail tenant_id=%s error=%s", tenant_id, exc)
            return False

        headers = {"Content-Type": "application/json"}
        if self._webhook_token:
            headers["X-Webhook-Token"] = self._webhook_token
        payload = {"tenant_id": tenant_id, "message": message.to_payload()}
        try:
            response = await self._http.post(self._webhook_url, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            WA_FORWARD_FAILURES_TOTAL.labels("status").inc()
            LOGGER.error(
                "stage=send_fail tenant_id=%s message_id=%s status=%s",
                tenant_id,
                message.id,
                exc.response.status_code,
            )
            return False
        except httpx.HTTPError as exc:
            WA_FORWARD_FAILURES_TOTAL.labels("http").inc()
            LOGGER.error(
                "stage=send_fail tenant_id=%s message_id=%s error=%s",
                tenant_id,
                message.id,
                exc,
            )
            return False
        except Exception:
            WA_FORWARD_FAILURES_TOTAL.labels("unexpected").inc()
            LOGGER.exception("stage=send_fail tenant_id=%s message_id=%s", tenant_id, message.id)
            return False

        WA_FORWARDED_TOTAL.inc()
        LOGGER.info("stage=incoming tenant_id=%s from=%s", tenant_id, message.sender)
        return True

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()


__all__ = ["InboundMessage", "MessageForwarder", "MEDIA_PLACEHOLDER", "digits_only"]
