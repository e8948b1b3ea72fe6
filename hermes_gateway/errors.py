from __future__ import annotations

import json
import re
from enum import Enum
from typing import Any, Protocol

from fastapi.responses import JSONResponse

INVALID_API_KEY = "invalid_api_key"
MODEL_NOT_FOUND = "model_not_found"
UPSTREAM_ERROR = "upstream_error"
INVALID_REQUEST_ERROR = "invalid_request_error"
INTERNAL_ERROR = "internal_error"


class UpstreamErrorKind(str, Enum):
    CLIENT_ERROR = "client_error"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    MODEL_NOT_FOUND = "model_not_found"
    QUOTA_EXHAUSTED = "quota_exhausted"
    NETWORK_ERROR = "network_error"


class GatewayError(Exception):
    """Base class for errors raised inside the gateway."""


class ProviderNotFoundError(GatewayError):
    def __init__(self, provider_id: str) -> None:
        super().__init__(f"Provider '{provider_id}' does not exist.")
        self.provider_id = provider_id


class CatalogFetchError(GatewayError):
    pass


class UpstreamNetworkError(GatewayError):
    def __init__(
        self,
        *,
        provider_id: str,
        model: str,
        details: dict[str, Any],
    ) -> None:
        super().__init__(
            f"Could not reach provider '{provider_id}' for model '{model}' "
            f"({details.get('error_type')}): {details.get('error')}"
        )
        self.provider_id = provider_id
        self.model = model
        self.details = details


class UpstreamErrorClassifier(Protocol):
    def classify(self, status_code: int, body: bytes | str) -> UpstreamErrorKind: ...


_QUOTA_CODES = frozenset(
    {"insufficient_quota", "quota_exceeded", "resource_exhausted", "billing_hard_limit_reached"}
)
_QUOTA_MARKERS = (
    "insufficient_quota",
    "quota",
    "resource_exhausted",
    "credit",
    "billing",
    "exceeded your current",
    "out of balance",
    "insufficient balance",
)
_MODEL_MISSING_CODES = frozenset({"model_not_found", "model_not_available"})
_NOT_A_MODEL_NAME = r"(?:param|field|option|argument|setting)\w*"
_MODEL_MISSING_PATTERN = re.compile(
    r"\bmodel(?:\s+(?!" + _NOT_A_MODEL_NAME + r")[`'\"]?[\w./:@-]+[`'\"]?)?"
    r"\s+(?:is\s+|was\s+)?(?:not found|does not exist|no longer available|not available)"
    r"|\b(?:unknown|invalid|unsupported|nonexistent) model\b(?!\s*" + _NOT_A_MODEL_NAME + r")",
    re.IGNORECASE,
)


def _decode_body(body: bytes | str) -> str:
    if isinstance(body, bytes):
        return body.decode("utf-8", errors="replace")
    return body


def _structured_error_fields(text: str) -> tuple[str, str]:
    try:
        payload = json.loads(text)
    except ValueError:
        return "", text
    if not isinstance(payload, dict):
        return "", text
    error = payload.get("error")
    if isinstance(error, dict):
        code = str(error.get("code") or error.get("type") or error.get("status") or "")
        message = str(error.get("message") or "")
        return code.lower(), message or text
    if isinstance(error, str):
        return str(payload.get("code") or "").lower(), error
    message = payload.get("message") or payload.get("detail") or ""
    return str(payload.get("code") or "").lower(), str(message) or text


class HeuristicErrorClassifier:
    """Status-code and message-marker heuristics for upstream failures.

    Providers word quota and missing-model errors differently, so the markers
    are a best effort. Deployments with stricter needs can pass their own
    ``UpstreamErrorClassifier`` to the forwarder and prober.
    """

    def __init__(
        self,
        *,
        quota_markers: tuple[str, ...] = _QUOTA_MARKERS,
    ) -> None:
        self._quota_markers = tuple(marker.lower() for marker in quota_markers)

    def classify(self, status_code: int, body: bytes | str) -> UpstreamErrorKind:
        text = _decode_body(body)
        code, message = _structured_error_fields(text)
        lowered = f"{code} {message}".lower()

        if status_code == 402 or code in _QUOTA_CODES:
            return UpstreamErrorKind.QUOTA_EXHAUSTED
        if status_code in {403, 429} and any(
            marker in lowered for marker in self._quota_markers
        ):
            return UpstreamErrorKind.QUOTA_EXHAUSTED
        if code in _MODEL_MISSING_CODES or status_code == 404:
            return UpstreamErrorKind.MODEL_NOT_FOUND
        if 400 <= status_code < 500 and _MODEL_MISSING_PATTERN.search(message):
            return UpstreamErrorKind.MODEL_NOT_FOUND
        if status_code == 429:
            return UpstreamErrorKind.RATE_LIMITED
        if status_code >= 500:
            return UpstreamErrorKind.SERVER_ERROR
        return UpstreamErrorKind.CLIENT_ERROR


def error_envelope(
    *,
    status_code: int,
    message: str,
    error_type: str,
    code: str,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        headers=headers,
        content={
            "error": {
                "message": message,
                "type": error_type,
                "code": code,
            }
        },
    )
