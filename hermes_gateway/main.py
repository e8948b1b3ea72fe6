from __future__ import annotations

import logging
import time
from dataclasses import asdict
from typing import Any, Awaitable, Callable
from uuid import uuid4

from fastapi import FastAPI, Query, Request, status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from hermes_gateway.errors import (
    INTERNAL_ERROR,
    INVALID_REQUEST_ERROR,
    error_envelope,
)
from hermes_gateway.gateway.auth import AuthConfigurationError, Authenticator
from hermes_gateway.gateway.usage_log import SyncResult
from hermes_gateway.services import GatewayServices, build_gateway_services
from hermes_gateway.settings import get_settings

OWNED_BY = "hermes-gateway"

app = FastAPI(
    title="Hermes Gateway",
    description="OpenAI-compatible gateway that routes chat completions across many providers.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


class ChatCompletionRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str = Field(min_length=1)
    messages: list[dict[str, Any]]
    stream: bool | None = None
    temperature: float | None = None
    max_tokens: int | None = None


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if not request.url.path.startswith("/v1"):
        return await call_next(request)

    authenticator: Authenticator | None = getattr(app.state, "authenticator", None)
    if authenticator is not None:
        auth_error = await authenticator.authenticate_request(request)
        if auth_error is not None:
            return auth_error

    return await call_next(request)


@app.middleware("http")
async def request_log_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    started = time.perf_counter()
    response = await call_next(request)
    services: GatewayServices | None = getattr(app.state, "services", None)
    if services is not None and request.url.path.startswith("/v1"):
        services.usage_log.log_request(
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=(time.perf_counter() - started) * 1000.0,
            model=getattr(request.state, "requested_model", None),
            ip=request.client.host if request.client is not None else None,
        )
    return response


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    authenticator = Authenticator(settings)
    services = build_gateway_services(settings)
    app.state.settings = settings
    app.state.authenticator = authenticator
    app.state.services = services
    await services.start()
    logger.info(
        (
            "startup complete provider_store_path=%s usage_log_enabled=%s "
            "max_attempts=%d attempt_timeout_seconds=%.1f worst_case_latency_seconds=%.1f"
        ),
        settings.provider_store_path or "<memory>",
        settings.usage_log_enabled,
        services.orchestrator.max_attempts,
        settings.upstream_timeout_seconds,
        services.orchestrator.worst_case_latency_seconds,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    services: GatewayServices | None = getattr(app.state, "services", None)
    if services is not None:
        await services.stop()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/v1/models")
async def models() -> dict[str, Any]:
    services: GatewayServices = app.state.services
    data: list[dict[str, Any]] = []
    seen: set[str] = set()
    for provider in await services.registry.list_all():
        for model_id in provider.models:
            if model_id in seen:
                continue
            seen.add(model_id)
            data.append(
                {
                    "id": model_id,
                    "object": "model",
                    "created": int(provider.last_synced_at or provider.created_at),
                    "owned_by": OWNED_BY,
                }
            )
    return {"object": "list", "data": data}


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    try:
        payload = await request.json()
    except ValueError:
        return error_envelope(
            status_code=status.HTTP_400_BAD_REQUEST,
            message="Expected a JSON request body.",
            error_type=INVALID_REQUEST_ERROR,
            code=INVALID_REQUEST_ERROR,
        )
    if not isinstance(payload, dict):
        return error_envelope(
            status_code=status.HTTP_400_BAD_REQUEST,
            message="Expected a JSON object request body.",
            error_type=INVALID_REQUEST_ERROR,
            code=INVALID_REQUEST_ERROR,
        )
    try:
        ChatCompletionRequest.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        return error_envelope(
            status_code=status.HTTP_400_BAD_REQUEST,
            message=f"Invalid request body at '{location}': {first.get('msg', 'invalid value')}",
            error_type=INVALID_REQUEST_ERROR,
            code=INVALID_REQUEST_ERROR,
        )

    request.state.requested_model = payload["model"]
    services: GatewayServices = app.state.services
    request_id = (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )
    return await services.orchestrator.handle_chat_completion(
        payload,
        incoming_headers=request.headers,
        request_id=request_id,
    )


@app.get("/v1/router/state")
async def router_state() -> dict[str, Any]:
    services: GatewayServices = app.state.services
    providers = await services.registry.list_all()
    return {
        "providers": [provider.public_view() for provider in providers],
        "cooldowns": services.dispatcher.cooldowns.snapshot(),
        "routing_stats": services.score_tracker.snapshot(),
        "usage": services.usage_log.snapshot(),
        "runtime": services.runtime_settings(),
        "background_tasks": {
            "active": services.supervisor.active_count,
            "failed": services.supervisor.failure_count,
        },
        "recent_sync_events": [
            asdict(entry) for entry in services.usage_log.recent_sync_events()
        ],
        "recent_requests": [
            asdict(entry) for entry in services.usage_log.recent_requests()
        ],
    }


@app.get("/v1/router/sync-logs")
async def sync_logs(
    provider_name: str | None = None,
    model: str | None = None,
    result: SyncResult | None = None,
    limit: int = Query(default=50, ge=1, le=1000),
) -> dict[str, Any]:
    services: GatewayServices = app.state.services
    entries = services.usage_log.recent_sync_events(
        limit, provider_name=provider_name, model=model, result=result
    )
    return {"data": [asdict(entry) for entry in entries]}


@app.get("/v1/router/request-logs")
async def request_logs(
    method: str | None = None,
    path: str | None = None,
    model: str | None = None,
    status_code: int | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=1000),
) -> dict[str, Any]:
    services: GatewayServices = app.state.services
    entries = services.usage_log.recent_requests(
        limit, method=method, path=path, model=model, status=status_code
    )
    return {"data": [asdict(entry) for entry in entries]}


@app.exception_handler(FileNotFoundError)
async def config_missing_handler(_: Request, exc: FileNotFoundError) -> JSONResponse:
    return error_envelope(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        message=str(exc),
        error_type="server_error",
        code=INTERNAL_ERROR,
    )


@app.exception_handler(AuthConfigurationError)
async def auth_config_handler(_: Request, exc: AuthConfigurationError) -> JSONResponse:
    return error_envelope(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        message=str(exc),
        error_type="server_error",
        code=INTERNAL_ERROR,
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error path=%s error_type=%s", request.url.path, exc.__class__.__name__
    )
    return error_envelope(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        message="Internal gateway error.",
        error_type="server_error",
        code=INTERNAL_ERROR,
    )


def run() -> None:
    import uvicorn

    uvicorn.run("hermes_gateway.main:app", host="0.0.0.0", port=8000, reload=False)
