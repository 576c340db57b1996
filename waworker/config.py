"""Environment-driven configuration for the WhatsApp session worker."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


DEFAULT_WA_WEB_URL = "http://waweb:9001"
DEFAULT_APP_INTERNAL_URL = "http://app:8000"
_WHATSAPP_WEBHOOK_PATH = "/webhook/whatsapp"


def _coerce_int(value: str | None, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip() or default)
    except ValueError:
        return default


def _parse_duration(raw: str | None, *, default: float) -> float:
    if not raw:
        return default
    cleaned = raw.strip().lower()
    if not cleaned:
        return default
    if cleaned.endswith("ms"):
        try:
            return float(cleaned[:-2]) / 1000.0
        except ValueError:
            return default
    if cleaned.endswith("s"):
        cleaned = cleaned[:-1]
    try:
        return float(cleaned)
    except ValueError:
        return default


def _normalize_url(raw: str | None, default: str) -> str:
    if not raw:
        return default
    cleaned = raw.strip()
    if not cleaned:
        return default
    return cleaned.rstrip("/") or default


def _resolve_sessions_dir(raw: str | None) -> Path:
    candidate = Path(raw or "/app/wa-sessions")
    try:
        candidate.mkdir(parents=True, exist_ok=True)
    except OSError:
        alt = Path("/tmp/wa-sessions")
        alt.mkdir(parents=True, exist_ok=True)
        return alt
    return candidate


def _resolve_webhook_url() -> str:
    explicit = (os.getenv("APP_WEBHOOK") or "").strip()
    if explicit:
        return explicit.rstrip("/")
    wa_specific = (os.getenv("WA_WEBHOOK_URL") or "").strip()
    if wa_specific:
        return wa_specific.rstrip("/")
    base = _normalize_url(os.getenv("APP_INTERNAL_URL"), DEFAULT_APP_INTERNAL_URL)
    return f"{base}{_WHATSAPP_WEBHOOK_PATH}"


@dataclass(frozen=True, slots=True)
class WorkerConfig:
    port: int
    webhook_url: str
    webhook_token: str | None
    bridge_url: str
    database_url: str
    status_table: str
    status_column: str
    sessions_dir: Path
    reconnect_delay: float
    qr_poll_interval: float
    qr_max_attempts: int
    http_timeout: float
    log_level: str
    admin_token: str | None = None

    def missing_settings(self) -> list[str]:
        """Names of settings the worker cannot run without."""

        missing: list[str] = []
        if not self.database_url:
            missing.append("DATABASE_URL")
        if not self.webhook_url.startswith(("http://", "https://")):
            missing.append("APP_WEBHOOK")
        return missing


def worker_config() -> WorkerConfig:
    max_attempts = _coerce_int(os.getenv("WA_QR_MAX_ATTEMPTS"), 300)
    return WorkerConfig(
        port=_coerce_int(os.getenv("WAWORKER_PORT"), 9001),
        webhook_url=_resolve_webhook_url(),
        webhook_token=(os.getenv("WEBHOOK_SECRET") or "").strip() or None,
        bridge_url=_normalize_url(os.getenv("WA_WEB_URL"), DEFAULT_WA_WEB_URL),
        database_url=(os.getenv("DATABASE_URL") or "").strip().replace(
            "postgresql+asyncpg://", "postgresql://"
        ),
        status_table=(os.getenv("WA_STATUS_TABLE") or "clients").strip() or "clients",
        status_column=(os.getenv("WA_STATUS_COLUMN") or "whatsapp_access_token").strip()
        or "whatsapp_access_token",
        sessions_dir=_resolve_sessions_dir(os.getenv("WA_SESSIONS_DIR")),
        reconnect_delay=_parse_duration(os.getenv("WA_RECONNECT_DELAY"), default=5.0),
        qr_poll_interval=_parse_duration(os.getenv("WA_QR_POLL_INTERVAL"), default=0.1),
        qr_max_attempts=max_attempts if max_attempts > 0 else 300,
        http_timeout=_parse_duration(os.getenv("WA_HTTP_TIMEOUT"), default=10.0),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper() or "INFO",
        admin_token=(os.getenv("ADMIN_TOKEN") or "").strip() or None,
    )


__all__ = ["WorkerConfig", "worker_config", "DEFAULT_WA_WEB_URL"]
