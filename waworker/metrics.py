from __future__ import annotations

from prometheus_client import Counter, Gauge


WA_QR_ISSUED_TOTAL = Counter(
    "wa_qr_issued_total", "Total number of pairing QR codes issued by the transport"
)
WA_LOGIN_SUCCESS_TOTAL = Counter(
    "wa_login_success_total", "Total number of WhatsApp connections that opened"
)
WA_CLOSE_TOTAL = Counter(
    "wa_close_total",
    "WhatsApp connection closes grouped by kind",
    labelnames=("kind",),
)
WA_RECONNECT_TOTAL = Counter(
    "wa_reconnect_total", "Total number of automatic reconnect attempts"
)
WA_FORWARDED_TOTAL = Counter(
    "waworker_forwarded_total", "Inbound messages delivered to the webhook"
)
WA_FORWARD_FAILURES_TOTAL = Counter(
    "waworker_forward_failures_total",
    "Inbound messages that could not be delivered",
    labelnames=("reason",),
)
WA_STATUS_WRITE_FAILURES_TOTAL = Counter(
    "waworker_status_write_failures_total",
    "Durable status writes that failed",
    labelnames=("op",),
)
WA_SESSIONS = Gauge(
    "waworker_sessions",
    "Number of tracked WhatsApp sessions grouped by state",
    labelnames=("state",),
)

__all__ = [
    "WA_QR_ISSUED_TOTAL",
    "WA_LOGIN_SUCCESS_TOTAL",
    "WA_CLOSE_TOTAL",
    "WA_RECONNECT_TOTAL",
    "WA_FORWARDED_TOTAL",
    "WA_FORWARD_FAILURES_TOTAL",
    "WA_STATUS_WRITE_FAILURES_TOTAL",
    "WA_SESSIONS",
]
