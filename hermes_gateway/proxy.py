from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping

import httpx
from fastapi.responses import JSONResponse, Response, StreamingResponse

from hermes_gateway.dispatcher import Dispatcher
from hermes_gateway.errors import (
    HeuristicErrorClassifier,
    UpstreamErrorClassifier,
    UpstreamErrorKind,
    UpstreamNetworkError,
)
from hermes_gateway.gateway.usage_log import JsonlUsageLog
from hermes_gateway.providers.models import Provider
from hermes_gateway.providers.registry import ProviderRegistry
from hermes_gateway.score_tracker import RoutingScoreTracker
from hermes_gateway.sync_engine import ProviderSyncEngine

HOP_BY_HOP_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
}

_PASSTHROUGH_REQUEST_HEADERS = {
    "accept",
    "baggage",
    "idempotency-key",
    "traceparent",
    "tracestate",
    "user-agent",
    "x-request-id",
}

logger = logging.getLogger("uvicorn.error")


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_repr = repr(exc)
    error_message = str(exc).strip() or error_repr
    error_type = exc.__class__.__name__.strip() or "RequestError"
    details: dict[str, Any] = {
        "error": error_message,
        "error_type": error_type,
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    request = getattr(exc, "request", None)
    if isinstance(request, httpx.Request):
        details["request_method"] = request.method
        details["request_url"] = str(request.url)
    return details


def _filter_response_headers(
    headers: httpx.Headers, *, decoded_body: bool
) -> dict[str, str]:
    filtered: dict[str, str] = {}
    for name, value in headers.items():
        lower = name.lower()
        if lower in HOP_BY_HOP_RESPONSE_HEADERS:
            continue
        if decoded_body and lower == "content-encoding":
            continue
        filtered[name] = value
    return filtered


def _build_upstream_headers(
    incoming_headers: Mapping[str, str], api_key: str, *, stream: bool
) -> dict[str, str]:
    headers: dict[str, str] = {}
    for name, value in incoming_headers.items():
        if name.lower() in _PASSTHROUGH_REQUEST_HEADERS:
            headers[name] = value
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    headers["Content-Type"] = "application/json"
    if not any(key.lower() == "accept" for key in headers):
        headers["Accept"] = "text/event-stream" if stream else "application/json"
    return headers


@dataclass(slots=True)
class ForwardResult:
    response: Response
    status_code: int
    kind: UpstreamErrorKind | None = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def retryable(self) -> bool:
        if self.ok:
            return False
        return self.kind is not None and self.kind != UpstreamErrorKind.CLIENT_ERROR


class ProxyForwarder:
    def __init__(
        self,
        *,
        dispatcher: Dispatcher,
        registry: ProviderRegistry,
        score_tracker: RoutingScoreTracker,
        usage_log: JsonlUsageLog,
        sync_engine: ProviderSyncEngine,
        classifier: UpstreamErrorClassifier | None = None,
        timeout_seconds: float = 120.0,
        connect_timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._registry = registry
        self._score_tracker = score_tracker
        self._usage_log = usage_log
        self._sync_engine = sync_engine
        self.classifier = classifier or HeuristicErrorClassifier()
        self.timeout_seconds = max(0.1, float(timeout_seconds))
        connect_timeout = max(0.1, min(float(connect_timeout_seconds), self.timeout_seconds))
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=self.timeout_seconds,
                connect=connect_timeout,
            ),
            limits=httpx.Limits(max_connections=512, max_keepalive_connections=128),
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def forward(
        self,
        provider: Provider,
        resolved_model: str,
        payload: dict[str, Any],
        *,
        incoming_headers: Mapping[str, str],
        request_id: str,
    ) -> ForwardResult:
        stream = bool(payload.get("stream"))
        upstream_payload = {**payload, "model": resolved_model}
        request = self.client.build_request(
            method="POST",
            url=f"{provider.base_url}/chat/completions",
            json=upstream_payload,
            headers=_build_upstream_headers(
                incoming_headers, provider.api_key, stream=stream
            ),
        )
        started = time.perf_counter()
        try:
            upstream = await self.client.send(request, stream=True)
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            latency_ms = (time.perf_counter() - started) * 1000.0
            self._record_failure(
                provider, resolved_model, UpstreamErrorKind.NETWORK_ERROR, latency_ms
            )
            logger.warning(
                "proxy_request_error request_id=%s provider_id=%s model=%s error_type=%s error=%s",
                request_id,
                provider.id,
                resolved_model,
                details["error_type"],
                details["error"],
            )
            raise UpstreamNetworkError(
                provider_id=provider.id, model=resolved_model, details=details
            ) from exc

        route_headers = {
            "x-gateway-request-id": request_id,
            "x-gateway-provider": provider.id,
            "x-gateway-model": resolved_model,
        }

        if not upstream.is_success:
            try:
                body = await upstream.aread()
            except httpx.RequestError:
                body = b""
            finally:
                await upstream.aclose()
            latency_ms = (time.perf_counter() - started) * 1000.0
            kind = self.classifier.classify(upstream.status_code, body)
            self._record_failure(provider, resolved_model, kind, latency_ms)
            logger.warning(
                "proxy_upstream_error request_id=%s provider_id=%s model=%s status=%d kind=%s latency_ms=%.1f",
                request_id,
                provider.id,
                resolved_model,
                upstream.status_code,
                kind.value,
                latency_ms,
            )
            headers = _filter_response_headers(upstream.headers, decoded_body=True)
            headers.update(route_headers)
            return ForwardResult(
                response=Response(
                    content=body,
                    status_code=upstream.status_code,
                    headers=headers,
                ),
                status_code=upstream.status_code,
                kind=kind,
            )

        if stream:
            headers = _filter_response_headers(upstream.headers, decoded_body=False)
            headers.update(route_headers)
            media_type = headers.pop("content-type", "text/event-stream")
            logger.info(
                "proxy_stream_started request_id=%s provider_id=%s model=%s status=%d",
                request_id,
                provider.id,
                resolved_model,
                upstream.status_code,
            )
            return ForwardResult(
                response=StreamingResponse(
                    content=self._stream_body(
                        upstream,
                        provider=provider,
                        resolved_model=resolved_model,
                        request_id=request_id,
                        started=started,
                    ),
                    status_code=upstream.status_code,
                    headers=headers,
                    media_type=media_type,
                ),
                status_code=upstream.status_code,
            )

        try:
            body = await upstream.aread()
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            self._record_failure(
                provider,
                resolved_model,
                UpstreamErrorKind.NETWORK_ERROR,
                (time.perf_counter() - started) * 1000.0,
            )
            raise UpstreamNetworkError(
                provider_id=provider.id, model=resolved_model, details=details
            ) from exc
        finally:
            await upstream.aclose()
        latency_ms = (time.perf_counter() - started) * 1000.0
        await self._record_success(provider, resolved_model, latency_ms)
        logger.info(
            "proxy_response request_id=%s provider_id=%s model=%s status=%d latency_ms=%.1f",
            request_id,
            provider.id,
            resolved_model,
            upstream.status_code,
            latency_ms,
        )
        headers = _filter_response_headers(upstream.headers, decoded_body=True)
        headers.update(route_headers)
        try:
            parsed = json.loads(body)
        except ValueError:
            return ForwardResult(
                response=Response(
                    content=body, status_code=upstream.status_code, headers=headers
                ),
                status_code=upstream.status_code,
            )
        headers.pop("content-type", None)
        return ForwardResult(
            response=JSONResponse(
                content=parsed, status_code=upstream.status_code, headers=headers
            ),
            status_code=upstream.status_code,
        )

    async def _stream_body(
        self,
        upstream: httpx.Response,
        *,
        provider: Provider,
        resolved_model: str,
        request_id: str,
        started: float,
    ) -> AsyncIterator[bytes]:
        completed = False
        failed = False
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
            completed = True
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "proxy_upstream_stream_error request_id=%s provider_id=%s model=%s error_type=%s error=%s",
                request_id,
                provider.id,
                resolved_model,
                details["error_type"],
                details["error"],
            )
            failed = True
            raise
        finally:
            await upstream.aclose()
            latency_ms = (time.perf_counter() - started) * 1000.0
            if completed:
                await self._record_success(provider, resolved_model, latency_ms)
            elif failed:
                self._record_failure(
                    provider,
                    resolved_model,
                    UpstreamErrorKind.NETWORK_ERROR,
                    latency_ms,
                )

    async def _record_success(
        self, provider: Provider, resolved_model: str, latency_ms: float
    ) -> None:
        self._score_tracker.record(
            provider.id, resolved_model, success=True, latency_ms=latency_ms
        )
        self._dispatcher.clear_cooldown(provider.id, resolved_model)
        self._usage_log.record_usage(
            model=resolved_model, provider_id=provider.id, success=True
        )
        await self._registry.touch_last_used(provider.id)

    def _record_failure(
        self,
        provider: Provider,
        resolved_model: str,
        kind: UpstreamErrorKind,
        latency_ms: float,
    ) -> None:
        self._score_tracker.record(
            provider.id, resolved_model, success=False, latency_ms=latency_ms
        )
        self._usage_log.record_usage(
            model=resolved_model, provider_id=provider.id, success=False
        )
        self._usage_log.increment("upstream_error")
        if kind != UpstreamErrorKind.CLIENT_ERROR:
            self._dispatcher.penalize(
                provider.id,
                resolved_model,
                extended=kind == UpstreamErrorKind.QUOTA_EXHAUSTED,
            )
        if kind == UpstreamErrorKind.MODEL_NOT_FOUND:
            self._sync_engine.handle_model_not_found(provider.id, resolved_model)
