from __future__ import annotations

import hmac

from fastapi import Request, status
from fastapi.responses import JSONResponse

from hermes_gateway.errors import INVALID_API_KEY, error_envelope
from hermes_gateway.settings import Settings


class AuthConfigurationError(RuntimeError):
    """Raised when gateway authentication is enabled but misconfigured."""


class Authenticator:
    """Shared-secret gate in front of the /v1 surface.

    Clients present one of the configured gateway keys either as
    ``Authorization: Bearer <key>``, as a bare ``Authorization`` value, or in
    ``x-api-key``. Keys are compared in constant time.
    """

    def __init__(self, settings: Settings):
        self.required = settings.ingress_auth_required
        self._keys = [key.encode("utf-8") for key in settings.gateway_api_keys_list]
        if self.required and not self._keys:
            raise AuthConfigurationError(
                "Gateway auth is required, but GATEWAY_API_KEYS is empty.",
            )

    def validate(self, credential: str) -> bool:
        presented = _strip_bearer(credential).encode("utf-8")
        if not presented:
            return False
        matched = False
        for key in self._keys:
            matched |= hmac.compare_digest(presented, key)
        return matched

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        if not self.required:
            return None
        credential = request.headers.get("authorization") or request.headers.get(
            "x-api-key", ""
        )
        if not _strip_bearer(credential):
            return _unauthorized("Missing gateway API key.")
        if not self.validate(credential):
            return _unauthorized("Invalid gateway API key.")
        return None


def _strip_bearer(credential: str) -> str:
    token = credential.strip()
    scheme, _, rest = token.partition(" ")
    if scheme.lower() == "bearer":
        return rest.strip()
    return token


def _unauthorized(message: str) -> JSONResponse:
    return error_envelope(
        status_code=status.HTTP_401_UNAUTHORIZED,
        message=message,
        error_type="authentication_error",
        code=INVALID_API_KEY,
        headers={"WWW-Authenticate": "Bearer"},
    )
