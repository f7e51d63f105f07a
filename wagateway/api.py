from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Callable, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from config import GatewayConfig, gateway_config

from .autoreply import AutoResponder
from .broadcast import BroadcastBridge
from .engine import SessionEngine, WawebEngine
from .errors import GatewayError, ValidationError
from .formatter import format_phone_number
from .gateway import INVALID_VALUE, CommandGateway, CommandResult
from .manager import RecoveryPolicy, SessionManager
from .media import MediaFetcher


logger = logging.getLogger("wagateway.api")

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def _init_logging() -> None:
    level_name = (os.getenv("LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    fmt = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)
    logging.getLogger("wagateway").setLevel(level)


class SendMessageRequest(BaseModel):
    number: Optional[str | int] = None
    message: Optional[str] = None


class SendMediaRequest(BaseModel):
    number: Optional[str | int] = None
    caption: Optional[str] = None
    file: Optional[str] = None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _extract_token(request: Request) -> str:
    query_token = (request.query_params.get("token") or "").strip()
    header_token = request.headers.get("X-Webhook-Token") or ""
    auth_header = request.headers.get("Authorization") or ""
    if auth_header.lower().startswith("bearer "):
        auth_header = auth_header[7:]
    header_token = (header_token or auth_header).strip()
    return query_token or header_token


def create_app(
    cfg: GatewayConfig | None = None,
    *,
    engine_factory: Callable[[], SessionEngine] | None = None,
    fetcher: MediaFetcher | None = None,
) -> FastAPI:
    _init_logging()
    cfg = cfg or gateway_config()

    if engine_factory is None:

        def engine_factory() -> SessionEngine:
            return WawebEngine(
                cfg.engine_url,
                cfg.session_id,
                token=cfg.engine_token,
                timeout=cfg.engine_http_timeout,
            )

    bridge = BroadcastBridge(queue_size=cfg.subscriber_queue_size)
    manager = SessionManager(
        engine_factory,
        bridge,
        policy=RecoveryPolicy(
            max_attempts=cfg.recovery_max_attempts,
            base_delay=cfg.recovery_base_delay,
            max_delay=cfg.recovery_max_delay,
        ),
    )
    manager.add_listener(
        AutoResponder(
            manager,
            ping_enabled=cfg.ping_reply_enabled,
            reject_calls=cfg.reject_calls,
        )
    )
    media_fetcher = fetcher or MediaFetcher(
        max_bytes=cfg.media_max_bytes,
        timeout=cfg.media_fetch_timeout,
        allowed_types=cfg.media_allowed_types,
    )
    gateway = CommandGateway(
        manager,
        media_fetcher,
        command_timeout=cfg.command_timeout,
        canonicalize=lambda raw: format_phone_number(raw, country_code=cfg.default_country_code),
    )

    app = FastAPI(title="wagateway")
    app.state.config = cfg
    app.state.session_manager = manager
    app.state.bridge = bridge
    app.state.gateway = gateway

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - wiring
        logger.info(
            "stage=startup engine_url=%s session=%s port=%s",
            cfg.engine_url,
            cfg.session_id,
            cfg.port,
        )
        await manager.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - wiring
        await manager.shutdown()

    def _error_response(exc: GatewayError, route: str) -> JSONResponse:
        logger.warning(
            "event=command_failed route=%s kind=%s status=%s message=%s",
            route,
            exc.kind,
            exc.status_code,
            exc.message,
        )
        return JSONResponse(
            CommandResult.from_error(exc).to_payload(),
            status_code=exc.status_code,
            headers=dict(NO_STORE_HEADERS),
        )

    @app.exception_handler(RequestValidationError)
    async def _request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        fields: dict[str, str] = {}
        for error in exc.errors():
            path = [str(part) for part in error.get("loc", ()) if part != "body"]
            fields.setdefault(path[0] if path else "body", f"{INVALID_VALUE}: {error.get('msg')}")
        return _error_response(ValidationError(fields), request.url.path)

    @app.post("/send-message")
    async def send_message(payload: SendMessageRequest):
        try:
            result = await gateway.send_text(_as_text(payload.number), _as_text(payload.message))
        except GatewayError as exc:
            return _error_response(exc, "/send-message")
        return JSONResponse(result.to_payload(), headers=dict(NO_STORE_HEADERS))

    @app.post("/send-media")
    async def send_media(payload: SendMediaRequest):
        try:
            result = await gateway.send_media(
                _as_text(payload.number),
                _as_text(payload.file),
                payload.caption,
            )
        except GatewayError as exc:
            return _error_response(exc, "/send-media")
        return JSONResponse(result.to_payload(), headers=dict(NO_STORE_HEADERS))

    @app.websocket("/ws")
    async def realtime_socket(ws: WebSocket) -> None:
        await ws.accept()
        subscriber = bridge.register()

        async def _reader() -> None:
            while True:
                message = await ws.receive()
                if message.get("type") == "websocket.disconnect":
                    return

        async def _writer() -> None:
            while True:
                notice = await subscriber.get()
                await ws.send_json(notice.to_payload())

        tasks = {
            asyncio.create_task(_reader(), name=f"ws-reader-{subscriber.id}"),
            asyncio.create_task(_writer(), name=f"ws-writer-{subscriber.id}"),
        }
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task.cancelled():
                    continue
                exc = task.exception()
                if exc is not None and not isinstance(exc, WebSocketDisconnect):
                    logger.debug(
                        "event=ws_closed subscriber=%s error=%s", subscriber.id, exc
                    )
        finally:
            bridge.unregister(subscriber)
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    @app.post("/webhook/engine")
    async def engine_webhook(request: Request) -> JSONResponse:
        secret = cfg.webhook_secret or ""
        if secret and _extract_token(request) != secret:
            raise HTTPException(status_code=401, detail="unauthorized")

        try:
            payload = await request.json()
        except json.JSONDecodeError:
            raise HTTPException(status_code=422, detail="invalid_json")
        except Exception:
            raise HTTPException(status_code=422, detail="invalid_payload")

        if not isinstance(payload, dict):
            raise HTTPException(status_code=422, detail="invalid_payload")

        name = str(payload.get("event") or payload.get("type") or "").strip().lower()
        if not name:
            raise HTTPException(status_code=422, detail="invalid_event")

        event = manager.ingest(payload)
        return JSONResponse(
            {
                "ok": True,
                "accepted": event is not None,
                "event": event.kind.value if event is not None else name,
            }
        )

    @app.get("/session/status")
    async def session_status() -> JSONResponse:
        return JSONResponse(manager.snapshot().to_payload(), headers=dict(NO_STORE_HEADERS))

    @app.post("/session/restart")
    async def session_restart() -> JSONResponse:
        snapshot = await manager.restart()
        return JSONResponse(snapshot.to_payload(), headers=dict(NO_STORE_HEADERS))

    @app.get("/health")
    async def health():
        snapshot = manager.snapshot()
        return {
            "ok": not snapshot.exhausted,
            "state": snapshot.state,
            "subscribers": snapshot.subscribers,
        }

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    return app


__all__ = ["create_app"]
