from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx

from hermes_gateway.orchestrator import RequestOrchestrator
from tests.gateway_test_utils import add_provider, build_services, chat_body


def _payload(model: str = "m") -> dict[str, Any]:
    return {"model": model, "messages": [{"role": "user", "content": "hello"}]}


def _body(response: Any) -> dict[str, Any]:
    return json.loads(bytes(response.body).decode("utf-8"))


def test_client_error_is_returned_after_single_attempt() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.host)
        return httpx.Response(
            400, json={"error": {"message": "temperature must be <= 2", "type": "invalid_request_error"}}
        )

    services = build_services(handler)

    async def _run() -> Any:
        await add_provider(services, "p1", ["m"])
        await add_provider(services, "p2", ["m"])
        await add_provider(services, "p3", ["m"])
        return await services.orchestrator.handle_chat_completion(
            _payload(), incoming_headers={}, request_id="r1"
        )

    response = asyncio.run(_run())
    assert response.status_code == 400
    assert _body(response)["error"]["message"] == "temperature must be <= 2"
    assert len(calls) == 1
    assert services.usage_log.counter("retry") == 0
    assert services.usage_log.counter("retry_exhausted") == 0
    asyncio.run(services.stop())


def test_server_errors_exhaust_attempts_and_return_last_upstream_body() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.host)
        return httpx.Response(
            503, json={"error": {"message": f"{request.url.host} overloaded"}}
        )

    services = build_services(handler)

    async def _run() -> Any:
        for provider_id in ("p1", "p2", "p3", "p4"):
            await add_provider(services, provider_id, ["m"])
        return await services.orchestrator.handle_chat_completion(
            _payload(), incoming_headers={}, request_id="r2"
        )

    response = asyncio.run(_run())
    assert response.status_code == 503
    assert len(calls) == 3
    assert len(set(calls)) == 3
    assert _body(response)["error"]["message"] == f"{calls[-1]} overloaded"
    assert services.usage_log.counter("retry") == 2
    assert services.usage_log.counter("retry_exhausted") == 1
    assert services.usage_log.counter("cooldown") == 3
    asyncio.run(services.stop())


def test_fails_over_to_next_provider_after_rate_limit() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "busy.test":
            return httpx.Response(429, json={"error": {"message": "slow down"}})
        return httpx.Response(200, json=chat_body("from calm"))

    services = build_services(handler)

    async def _run() -> Any:
        await add_provider(services, "busy", ["m"])
        await add_provider(services, "calm", ["m"])
        for _ in range(10):
            services.score_tracker.record("busy", "m", success=True, latency_ms=10.0)
        return await services.orchestrator.handle_chat_completion(
            _payload(), incoming_headers={}, request_id="r3"
        )

    response = asyncio.run(_run())
    assert response.status_code == 200
    assert response.headers["x-gateway-provider"] == "calm"
    assert _body(response)["choices"][0]["message"]["content"] == "from calm"
    assert services.usage_log.counter("retry") == 1
    assert services.cooldowns.get("busy", "m") is not None
    asyncio.run(services.stop())


def test_unsupported_model_returns_model_not_found() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no upstream call expected")

    services = build_services(handler)

    async def _run() -> Any:
        await add_provider(services, "p1", ["gpt-4"])
        return await services.orchestrator.handle_chat_completion(
            _payload("gpt-5"), incoming_headers={}, request_id="r4"
        )

    response = asyncio.run(_run())
    assert response.status_code == 404
    assert _body(response) == {
        "error": {
            "message": "The model 'gpt-5' is not served by any provider.",
            "type": "invalid_request_error",
            "code": "model_not_found",
        }
    }
    asyncio.run(services.stop())


def test_network_failures_only_surface_as_bad_gateway() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    services = build_services(handler)

    async def _run() -> Any:
        await add_provider(services, "p1", ["m"])
        await add_provider(services, "p2", ["m"])
        return await services.orchestrator.handle_chat_completion(
            _payload(), incoming_headers={}, request_id="r5"
        )

    response = asyncio.run(_run())
    assert response.status_code == 502
    assert _body(response)["error"]["code"] == "upstream_error"
    assert _body(response)["error"]["type"] == "api_error"
    assert services.cooldowns.get("p1", "m") is not None
    assert services.cooldowns.get("p2", "m") is not None
    assert services.usage_log.counter("retry_exhausted") == 1
    asyncio.run(services.stop())


def test_model_not_found_upstream_retries_elsewhere() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json={"data": []})
        if request.url.host == "stale.test":
            return httpx.Response(404, json={"error": {"code": "model_not_found"}})
        return httpx.Response(200, json=chat_body())

    services = build_services(handler)

    async def _run() -> Any:
        await add_provider(services, "stale", ["m"])
        await add_provider(services, "fresh", ["m"])
        for _ in range(10):
            services.score_tracker.record("stale", "m", success=True, latency_ms=10.0)
        response = await services.orchestrator.handle_chat_completion(
            _payload(), incoming_headers={}, request_id="r6"
        )
        await services.supervisor.wait_idle()
        return response

    response = asyncio.run(_run())
    assert response.status_code == 200
    assert response.headers["x-gateway-provider"] == "fresh"

    async def _models() -> list[str]:
        provider = await services.registry.get("stale")
        assert provider is not None
        return provider.models

    assert asyncio.run(_models()) == []
    asyncio.run(services.stop())


def test_max_attempts_setter_clamps_and_updates_worst_case_latency() -> None:
    services = build_services(lambda request: httpx.Response(200, json=chat_body()))
    orchestrator: RequestOrchestrator = services.orchestrator
    orchestrator.max_attempts = 0
    assert orchestrator.max_attempts == 1
    orchestrator.max_attempts = 4
    assert orchestrator.worst_case_latency_seconds == 4 * 120.0
    asyncio.run(services.stop())
