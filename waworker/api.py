from __future__ import annotations

import contextlib
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Union

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .bridge import BridgeTransport
from .config import WorkerConfig, worker_config
from .credentials import CredentialStore
from .forwarder import MessageForwarder
from .orchestrator import SessionOrchestrator
from .qr_wait import CredentialTimeout
from .status_store import PostgresStatusStore
from .store import SessionStore


logger = logging.getLogger("waworker.api")

SERVICE_NAME = "waworker"
NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


class TenantBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: Optional[Union[str, int]] = Field(
        default=None,
        validation_alias=AliasChoices("tenant_id", "cliente_id", "tenant"),
    )

    @field_validator("tenant_id", mode="before")
    @classmethod
    def _normalize_tenant(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None


@dataclass(slots=True)
class WorkerServices:
    orchestrator: SessionOrchestrator
    forwarder: MessageForwarder
    transport: BridgeTransport
    status_store: PostgresStatusStore

    async def aclose(self) -> None:
        await self.orchestrator.shutdown()
        await self.forwarder.aclose()
        await self.transport.aclose()
        await self.status_store.close()


def build_services(cfg: WorkerConfig) -> WorkerServices:
    credentials = CredentialStore(cfg.sessions_dir)
    forwarder = MessageForwarder(
        cfg.webhook_url,
        webhook_token=cfg.webhook_token,
        http_timeout=cfg.http_timeout,
    )
    transport = BridgeTransport(cfg.bridge_url, credentials, http_timeout=cfg.http_timeout)
    status_store = PostgresStatusStore(
        cfg.database_url, table=cfg.status_table, column=cfg.status_column
    )
    orchestrator = SessionOrchestrator(
        SessionStore(),
        transport,
        forwarder,
        status_store,
        credentials=credentials,
        reconnect_delay=cfg.reconnect_delay,
    )
    return WorkerServices(orchestrator, forwarder, transport, status_store)


def create_app() -> FastAPI:
    cfg = worker_config()
    logger.info(
        "stage=config_resolved webhook_url=%s bridge_url=%s token_present=%s",
        cfg.webhook_url,
        cfg.bridge_url,
        "true" if cfg.webhook_token else "false",
    )
    services = build_services(cfg)
    orchestrator = services.orchestrator
    started_at = time.monotonic()

    @contextlib.asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:  # pragma: no cover - wiring
        missing = cfg.missing_settings()
        if missing:
            logger.warning("event=settings_missing names=%s", ",".join(missing))
        try:
            yield
        finally:
            await services.aclose()

    app = FastAPI(title=SERVICE_NAME, lifespan=lifespan)
    app.state.services = services
    app.state.orchestrator = orchestrator

    def _unauthorized(request: Request, route: str) -> JSONResponse | None:
        if not cfg.admin_token:
            return None
        header = request.headers.get("X-Admin-Token", "").strip()
        if header and header == cfg.admin_token:
            return None
        logger.warning("event=admin_token_invalid route=%s", route)
        return JSONResponse(
            {"error": "not_authorized"}, status_code=401, headers=dict(NO_STORE_HEADERS)
        )

    def _missing_tenant(route: str) -> JSONResponse:
        logger.warning("event=tenant_missing route=%s", route)
        return JSONResponse(
            {"error": "tenant_id_required"}, status_code=400, headers=dict(NO_STORE_HEADERS)
        )

    def _health_payload() -> dict[str, Any]:
        return {
            "status": "online",
            "service": SERVICE_NAME,
            "mode": "read_only",
            "active_sessions": orchestrator.store.size(),
            "uptime": round(time.monotonic() - started_at, 3),
        }

    @app.get("/")
    async def root():
        return _health_payload()

    @app.get("/health")
    async def health():
        return _health_payload()

    @app.post("/generate-qr")
    async def generate_qr(request: Request, payload: TenantBody):
        unauthorized = _unauthorized(request, "/generate-qr")
        if unauthorized is not None:
            return unauthorized
        tenant = payload.tenant_id
        if not tenant:
            return _missing_tenant("/generate-qr")
        logger.info("event=qr_requested tenant_id=%s", tenant)
        try:
            handle = await orchestrator.establish(tenant)
            result = await handle.wait(
                poll_interval=cfg.qr_poll_interval,
                max_attempts=cfg.qr_max_attempts,
            )
        except CredentialTimeout as exc:
            return JSONResponse(
                {"error": "qr_timeout", "waited": exc.waited},
                status_code=408,
                headers=dict(NO_STORE_HEADERS),
            )
        except Exception as exc:
            logger.exception("event=generate_qr_failed tenant_id=%s", tenant)
            return JSONResponse(
                {"error": "qr_failed", "details": str(exc)},
                status_code=500,
                headers=dict(NO_STORE_HEADERS),
            )
        return JSONResponse(result.to_payload(), headers=dict(NO_STORE_HEADERS))

    @app.post("/disconnect")
    async def disconnect(request: Request, payload: TenantBody):
        unauthorized = _unauthorized(request, "/disconnect")
        if unauthorized is not None:
            return unauthorized
        tenant = payload.tenant_id
        if not tenant:
            return _missing_tenant("/disconnect")
        try:
            existed = await orchestrator.terminate(tenant)
        except Exception as exc:
            logger.exception("event=disconnect_failed tenant_id=%s", tenant)
            return JSONResponse(
                {"error": "disconnect_failed", "details": str(exc)},
                status_code=500,
                headers=dict(NO_STORE_HEADERS),
            )
        return JSONResponse(
            {"success": True, "message": "disconnected", "existed": existed},
            headers=dict(NO_STORE_HEADERS),
        )

    @app.get("/status/{tenant_id}")
    async def status(tenant_id: str):
        snapshot = orchestrator.status(tenant_id.strip())
        return JSONResponse(snapshot.to_payload(), headers=dict(NO_STORE_HEADERS))

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    return app


__all__ = ["create_app", "build_services", "WorkerServices", "TenantBody"]
