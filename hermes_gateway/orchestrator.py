from __future__ import annotations

import logging
from typing import Any, Mapping

from fastapi import status
from fastapi.responses import Response

from hermes_gateway.dispatcher import Dispatcher
from hermes_gateway.errors import (
    INVALID_REQUEST_ERROR,
    MODEL_NOT_FOUND,
    UPSTREAM_ERROR,
    UpstreamNetworkError,
    error_envelope,
)
from hermes_gateway.gateway.usage_log import JsonlUsageLog
from hermes_gateway.proxy import ProxyForwarder

logger = logging.getLogger("uvicorn.error")


class RequestOrchestrator:
    """Retry loop behind the chat endpoint.

    Each attempt goes to a provider not tried before for this request. Client
    errors end the loop at once. Rate limits, server errors and network
    failures move on to the next provider until ``max_attempts`` is spent.
    """

    def __init__(
        self,
        *,
        dispatcher: Dispatcher,
        forwarder: ProxyForwarder,
        usage_log: JsonlUsageLog,
        max_attempts: int = 3,
        attempt_timeout_seconds: float = 120.0,
    ) -> None:
        self._dispatcher = dispatcher
        self._forwarder = forwarder
        self._usage_log = usage_log
        self._max_attempts = max(1, int(max_attempts))
        self._attempt_timeout_seconds = max(0.0, float(attempt_timeout_seconds))

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @max_attempts.setter
    def max_attempts(self, value: int) -> None:
        self._max_attempts = max(1, int(value))

    @property
    def worst_case_latency_seconds(self) -> float:
        return self._attempt_timeout_seconds * self._max_attempts

    async def handle_chat_completion(
        self,
        payload: dict[str, Any],
        *,
        incoming_headers: Mapping[str, str],
        request_id: str,
    ) -> Response:
        requested_model = str(payload.get("model") or "").strip()
        excluded: set[str] = set()
        last_error: Response | None = None
        max_attempts = self._max_attempts

        for attempt in range(1, max_attempts + 1):
            selection = await self._dispatcher.select_provider(
                requested_model, excluded, request_id=request_id
            )
            if selection is None:
                if attempt == 1:
                    return error_envelope(
                        status_code=status.HTTP_404_NOT_FOUND,
                        message=f"The model '{requested_model}' is not served by any provider.",
                        error_type=INVALID_REQUEST_ERROR,
                        code=MODEL_NOT_FOUND,
                    )
                break

            if attempt > 1:
                self._usage_log.increment("retry")
            excluded.add(selection.provider.id)
            logger.info(
                "proxy_attempt request_id=%s attempt=%d/%d provider_id=%s model=%s",
                request_id,
                attempt,
                max_attempts,
                selection.provider.id,
                selection.resolved_model,
            )
            try:
                result = await self._forwarder.forward(
                    selection.provider,
                    selection.resolved_model,
                    payload,
                    incoming_headers=incoming_headers,
                    request_id=request_id,
                )
            except UpstreamNetworkError as exc:
                logger.info(
                    "proxy_retry request_id=%s provider_id=%s reason=network_error error=%s",
                    request_id,
                    exc.provider_id,
                    exc,
                )
                continue

            if result.ok or not result.retryable:
                return result.response
            last_error = result.response
            logger.info(
                "proxy_retry request_id=%s provider_id=%s reason=%s status=%d",
                request_id,
                selection.provider.id,
                result.kind.value if result.kind is not None else "unknown",
                result.status_code,
            )

        self._usage_log.increment("retry_exhausted")
        logger.warning(
            "proxy_exhausted request_id=%s requested_model=%s tried=%d",
            request_id,
            requested_model,
            len(excluded),
        )
        if last_error is not None:
            return last_error
        return error_envelope(
            status_code=status.HTTP_502_BAD_GATEWAY,
            message="All upstream providers failed for this request.",
            error_type="api_error",
            code=UPSTREAM_ERROR,
        )
