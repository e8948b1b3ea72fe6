from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class ProviderStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    ACTIVE = "active"
    ERROR = "error"


ROUTABLE_STATUSES = frozenset({ProviderStatus.ACTIVE, ProviderStatus.SYNCING})


def _dedupe_models(values: list[str]) -> list[str]:
    deduped: list[str] = []
    seen: set[str] = set()
    for item in values:
        normalized = item.strip()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        deduped.append(normalized)
    return deduped


class ProviderInput(BaseModel):
    name: str = Field(min_length=1)
    base_url: str = Field(min_length=1)
    api_key: str = ""
    model_blacklist: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        return value.strip()

    @field_validator("base_url")
    @classmethod
    def _strip_base_url(cls, value: str) -> str:
        return value.strip().rstrip("/")

    @field_validator("model_blacklist")
    @classmethod
    def _clean_blacklist(cls, value: list[str]) -> list[str]:
        return _dedupe_models(value)


class Provider(BaseModel):
    id: str
    name: str
    base_url: str
    api_key: str = ""
    models: list[str] = Field(default_factory=list)
    model_blacklist: list[str] = Field(default_factory=list)
    status: ProviderStatus = ProviderStatus.PENDING
    last_synced_at: float | None = None
    last_used_at: float | None = None
    created_at: float = Field(default_factory=time.time)

    @field_validator("base_url")
    @classmethod
    def _strip_base_url(cls, value: str) -> str:
        return value.strip().rstrip("/")

    @field_validator("models", "model_blacklist")
    @classmethod
    def _dedupe(cls, value: list[str]) -> list[str]:
        return _dedupe_models(value)

    @property
    def is_routable(self) -> bool:
        return self.status in ROUTABLE_STATUSES

    def public_view(self) -> dict[str, Any]:
        payload = self.model_dump(mode="json", exclude={"api_key"})
        payload["has_api_key"] = bool(self.api_key)
        return payload
