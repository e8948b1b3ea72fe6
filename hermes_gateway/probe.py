from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx

from hermes_gateway.errors import (
    CatalogFetchError,
    HeuristicErrorClassifier,
    UpstreamErrorClassifier,
    UpstreamErrorKind,
)
from hermes_gateway.providers.models import Provider

logger = logging.getLogger("uvicorn.error")

PROBE_PROMPT = "Hi"
CHAT_PROTOCOL = "chat_completions"
MAX_COMPLETION_TOKENS_PROTOCOL = "chat_completions_max_completion_tokens"
RESPONSES_PROTOCOL = "responses"

_RESPONSES_HINTS = ("/responses", "responses api", "v1/responses")
_MAX_COMPLETION_TOKENS_HINTS = ("max_completion_tokens",)
_ERROR_TEXT_LIMIT = 300


@dataclass(slots=True)
class ProbeResult:
    ok: bool
    status_code: int | None
    latency_ms: float
    protocol: str = CHAT_PROTOCOL
    kind: UpstreamErrorKind | None = None
    error: str | None = None
    protocol_hint: str | None = None


def _auth_headers(provider: Provider) -> dict[str, str]:
    headers = {"Accept": "application/json", "Content-Type": "application/json"}
    if provider.api_key:
        headers["Authorization"] = f"Bearer {provider.api_key}"
    return headers


def _alternate_protocol(response_text: str) -> str | None:
    lowered = response_text.lower()
    if any(hint in lowered for hint in _MAX_COMPLETION_TOKENS_HINTS):
        return MAX_COMPLETION_TOKENS_PROTOCOL
    if any(hint in lowered for hint in _RESPONSES_HINTS):
        return RESPONSES_PROTOCOL
    return None


def _probe_request(
    provider: Provider, model: str, protocol: str
) -> tuple[str, dict[str, Any]]:
    if protocol == RESPONSES_PROTOCOL:
        return f"{provider.base_url}/responses", {
            "model": model,
            "input": PROBE_PROMPT,
            "max_output_tokens": 16,
        }
    payload: dict[str, Any] = {
        "model": model,
        "messages": [{"role": "user", "content": PROBE_PROMPT}],
    }
    if protocol == MAX_COMPLETION_TOKENS_PROTOCOL:
        payload["max_completion_tokens"] = 1
    else:
        payload["max_tokens"] = 1
    return f"{provider.base_url}/chat/completions", payload


def parse_catalog(payload: Any) -> list[str]:
    if isinstance(payload, dict):
        entries = payload.get("data")
        if entries is None:
            entries = payload.get("models")
    else:
        entries = payload
    if not isinstance(entries, list):
        raise CatalogFetchError("Model catalog response has no 'data' list.")

    models: list[str] = []
    seen: set[str] = set()
    for entry in entries:
        model_id = entry.get("id") if isinstance(entry, dict) else entry
        if not isinstance(model_id, str):
            continue
        normalized = model_id.strip()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        models.append(normalized)
    return models


class ModelProber:
    """Lists a provider's catalog and verifies single models with a one-token call."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 5.0,
        classifier: UpstreamErrorClassifier | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.timeout_seconds = max(0.1, float(timeout_seconds))
        self.classifier = classifier or HeuristicErrorClassifier()
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_seconds)
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def fetch_catalog(self, provider: Provider) -> list[str]:
        url = f"{provider.base_url}/models"
        try:
            response = await self.client.get(
                url, headers=_auth_headers(provider), timeout=self.timeout_seconds
            )
        except httpx.RequestError as exc:
            raise CatalogFetchError(
                f"Could not fetch model catalog from {url} "
                f"({exc.__class__.__name__}): {str(exc).strip() or repr(exc)}"
            ) from exc
        if not response.is_success:
            raise CatalogFetchError(
                f"Model catalog request to {url} failed with status "
                f"{response.status_code}: {response.text[:_ERROR_TEXT_LIMIT]}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise CatalogFetchError(
                f"Model catalog response from {url} is not valid JSON."
            ) from exc
        return parse_catalog(payload)

    async def probe(self, provider: Provider, model: str) -> ProbeResult:
        result = await self._probe_once(provider, model, CHAT_PROTOCOL)
        if result.ok or result.status_code is None:
            return result
        alternate = result.protocol_hint
        if alternate is None:
            return result
        logger.info(
            "probe_protocol_retry provider=%s model=%s protocol=%s",
            provider.id,
            model,
            alternate,
        )
        return await self._probe_once(provider, model, alternate)

    async def _probe_once(
        self, provider: Provider, model: str, protocol: str
    ) -> ProbeResult:
        url, payload = _probe_request(provider, model, protocol)
        started = time.perf_counter()
        try:
            response = await self.client.post(
                url,
                json=payload,
                headers=_auth_headers(provider),
                timeout=self.timeout_seconds,
            )
        except httpx.RequestError as exc:
            return ProbeResult(
                ok=False,
                status_code=None,
                latency_ms=(time.perf_counter() - started) * 1000.0,
                protocol=protocol,
                kind=UpstreamErrorKind.NETWORK_ERROR,
                error=f"{exc.__class__.__name__}: {str(exc).strip() or repr(exc)}",
            )
        latency_ms = (time.perf_counter() - started) * 1000.0
        if response.is_success:
            return ProbeResult(
                ok=True,
                status_code=response.status_code,
                latency_ms=latency_ms,
                protocol=protocol,
            )
        return ProbeResult(
            ok=False,
            status_code=response.status_code,
            latency_ms=latency_ms,
            protocol=protocol,
            kind=self.classifier.classify(response.status_code, response.content),
            error=response.text[:_ERROR_TEXT_LIMIT],
            protocol_hint=(
                _alternate_protocol(response.text)
                if protocol == CHAT_PROTOCOL
                else None
            ),
        )
