"""FastAPI application exposing the QR Wi-Fi association engine."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, Response
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from .config import ConfigManager, apply_environment
from .connection_log import ConnectionLog
from .credentials import Credential, parse_wifi_payload
from .engine import AssociationEngine, AssociationError, ErrorKind
from .permissions import NMCLIPermissionGate, PermissionGate
from .version import APP_VERSION
from .wifi import NMCLIBackend

_ERROR_STATUS = {
    ErrorKind.NO_INTERFACE: 503,
    ErrorKind.NETWORK_NOT_FOUND: 404,
    ErrorKind.MISSING_SECRET: 400,
    ErrorKind.PERMISSION_DENIED: 403,
    ErrorKind.RETRIES_EXHAUSTED: 503,
    ErrorKind.FATAL: 502,
}


class PayloadRequest(BaseModel):
    payload: str


class ConnectRequest(BaseModel):
    payload: str | None = None
    ssid: str | None = None
    password: str | None = None
    security: str | None = None


class SettingsUpdate(BaseModel):
    max_association_retries: int | None = None
    max_scan_retries: int | None = None
    scan_retry_step: float | None = None
    initial_backoff: float | None = None
    jitter_ratio: float | None = None
    permission_timeout: float | None = None
    resume_delay: float | None = None
    open_settings_on_denied: bool | None = None
    extra_retryable_codes: list[int] | None = None
    extra_retryable_domains: list[str] | None = None


def _credential_from_request(payload: ConnectRequest) -> Credential:
    if payload.payload is not None:
        credential = parse_wifi_payload(payload.payload)
        if credential is None:
            raise HTTPException(status_code=422, detail="Not a valid Wi-Fi QR payload")
        return credential
    if not payload.ssid:
        raise HTTPException(status_code=400, detail="Either payload or ssid must be provided")
    try:
        return Credential(
            ssid=payload.ssid,
            secret=payload.password,
            security=payload.security,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _association_http_error(exc: AssociationError) -> HTTPException:
    status = _ERROR_STATUS.get(exc.kind, 500)
    return HTTPException(status_code=status, detail={"kind": exc.kind.value, "detail": str(exc)})


def create_app(
    config_path: Path | str = Path("data/qr_wifi.json"),
    *,
    engine: AssociationEngine | None = None,
    permission_gate: PermissionGate | None = None,
) -> FastAPI:
    app = FastAPI(title="QR Wi-Fi", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_path = Path(config_path)
    config_manager = ConfigManager(config_path)
    settings = apply_environment(config_manager.get_settings())

    if engine is None:
        if permission_gate is None:
            permission_gate = NMCLIPermissionGate()
        engine = AssociationEngine(
            NMCLIBackend(interface=settings.interface),
            permission_gate,
            settings=settings,
            connection_log=ConnectionLog(settings.log_path),
        )
    connection_log = engine.connection_log

    app.state.config_manager = config_manager
    app.state.engine = engine

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        engine.start()
        if isinstance(permission_gate, NMCLIPermissionGate):
            await run_in_threadpool(permission_gate.start_watching)
        logger.info("QR Wi-Fi service started (version %s)", APP_VERSION)

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        await engine.aclose()
        if permission_gate is not None:
            await run_in_threadpool(permission_gate.close)

    @app.get("/api/version")
    async def get_version() -> dict[str, str]:
        return {"version": APP_VERSION}

    @app.post("/api/qr/parse")
    async def parse_payload(payload: PayloadRequest) -> dict[str, object | None]:
        credential = parse_wifi_payload(payload.payload)
        if credential is None:
            raise HTTPException(status_code=422, detail="Not a valid Wi-Fi QR payload")
        return {"credential": credential.to_dict()}

    @app.post("/api/wifi/connect")
    async def connect_wifi(payload: ConnectRequest, response: Response) -> dict[str, object | None]:
        credential = _credential_from_request(payload)
        try:
            outcome = await engine.connect(credential)
        except AssociationError as exc:
            raise _association_http_error(exc) from exc
        if outcome.deferred:
            response.status_code = 202
        return outcome.to_dict()

    @app.get("/api/wifi/attempt")
    async def get_attempt() -> dict[str, object | None]:
        return engine.snapshot()

    @app.delete("/api/wifi/pending")
    async def cancel_pending() -> dict[str, object | None]:
        credential = engine.cancel_pending()
        return {"cancelled": credential.ssid if credential is not None else None}

    @app.get("/api/wifi/log")
    async def get_wifi_log(limit: int = 50, event: str | None = None) -> dict[str, object]:
        try:
            entries = await run_in_threadpool(connection_log.tail, limit, event=event)
        except Exception as exc:  # pragma: no cover - defensive logging
            logger.warning("Unable to load Wi-Fi log: %s", exc)
            raise HTTPException(status_code=503, detail="Unable to load Wi-Fi log") from exc
        ordered = list(reversed(entries))
        return {"entries": [entry.to_dict() for entry in ordered]}

    @app.post("/api/wifi/settings")
    async def open_network_settings() -> dict[str, str]:
        await run_in_threadpool(engine.open_network_settings)
        return {"status": "requested"}

    @app.post("/api/permission/settings")
    async def open_permission_settings() -> dict[str, str]:
        await run_in_threadpool(engine.open_permission_settings)
        return {"status": "requested"}

    @app.get("/api/config")
    async def get_config() -> dict[str, Any]:
        return engine.settings.to_dict()

    @app.post("/api/config")
    async def update_config(payload: SettingsUpdate) -> dict[str, Any]:
        changes = {key: value for key, value in payload.model_dump().items() if value is not None}
        if not changes:
            raise HTTPException(status_code=400, detail="No settings provided")
        try:
            updated = await run_in_threadpool(config_manager.update_settings, changes)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        engine.apply_settings(apply_environment(updated))
        return engine.settings.to_dict()

    return app


__all__ = ["create_app"]
