from __future__ import annotations

from typing import Any

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from hermes_gateway.gateway.auth import AuthConfigurationError, Authenticator
from tests.gateway_test_utils import make_settings


def _guarded_app(authenticator: Authenticator) -> FastAPI:
    app = FastAPI()

    @app.middleware("http")
    async def guard(request: Request, call_next: Any) -> Any:
        denied = await authenticator.authenticate_request(request)
        if denied is not None:
            return denied
        return await call_next(request)

    @app.get("/v1/ping")
    async def ping() -> dict[str, str]:
        return {"status": "ok"}

    return app


def test_validate_accepts_configured_api_keys() -> None:
    authenticator = Authenticator(
        make_settings(ingress_auth_required=True, gateway_api_keys="key-1, key-2")
    )
    assert authenticator.validate("key-2") is True
    assert authenticator.validate(" key-1 ") is True
    assert authenticator.validate("Bearer key-1") is True
    assert authenticator.validate("bearer   key-2") is True
    assert authenticator.validate("key-3") is False
    assert authenticator.validate("Bearer") is False
    assert authenticator.validate("") is False
    assert authenticator.validate("ключ") is False


def test_required_auth_without_keys_is_misconfigured() -> None:
    with pytest.raises(AuthConfigurationError):
        Authenticator(make_settings(ingress_auth_required=True, gateway_api_keys=""))

    open_gate = Authenticator(make_settings(ingress_auth_required=False, gateway_api_keys=""))
    assert open_gate.validate("anything") is False


def test_request_gate_reads_authorization_or_x_api_key() -> None:
    authenticator = Authenticator(
        make_settings(ingress_auth_required=True, gateway_api_keys="gw-key")
    )
    client = TestClient(_guarded_app(authenticator))

    missing = client.get("/v1/ping")
    assert missing.status_code == 401
    assert missing.headers["www-authenticate"] == "Bearer"
    assert missing.json()["error"]["type"] == "authentication_error"
    assert missing.json()["error"]["code"] == "invalid_api_key"

    wrong = client.get("/v1/ping", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401
    assert wrong.json()["error"]["message"] == "Invalid gateway API key."

    assert client.get("/v1/ping", headers={"Authorization": "Bearer gw-key"}).status_code == 200
    assert client.get("/v1/ping", headers={"Authorization": "gw-key"}).status_code == 200
    assert client.get("/v1/ping", headers={"x-api-key": "gw-key"}).status_code == 200


def test_request_gate_is_open_when_auth_not_required() -> None:
    authenticator = Authenticator(make_settings(ingress_auth_required=False))
    client = TestClient(_guarded_app(authenticator))
    assert client.get("/v1/ping").status_code == 200
