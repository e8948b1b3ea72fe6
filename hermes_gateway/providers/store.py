from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

import yaml

from hermes_gateway.providers.models import Provider, ProviderStatus

_UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "base_url",
        "api_key",
        "models",
        "model_blacklist",
        "status",
        "last_synced_at",
        "last_used_at",
    }
)


class ProviderStore(Protocol):
    async def list_all(self) -> list[Provider]: ...

    async def get(self, provider_id: str) -> Provider | None: ...

    async def insert(self, provider: Provider) -> None: ...

    async def update_status_and_models(
        self,
        provider_id: str,
        status: ProviderStatus,
        *,
        models: list[str] | None = None,
        last_synced_at: float | None = None,
    ) -> Provider | None: ...

    async def update_fields(self, provider_id: str, **fields: Any) -> Provider | None: ...

    async def delete(self, provider_id: str) -> bool: ...


class InMemoryProviderStore:
    """Provider records kept in insertion order; callers always receive copies."""

    def __init__(self) -> None:
        self._providers: dict[str, Provider] = {}

    async def list_all(self) -> list[Provider]:
        return [provider.model_copy(deep=True) for provider in self._providers.values()]

    async def get(self, provider_id: str) -> Provider | None:
        provider = self._providers.get(provider_id)
        if provider is None:
            return None
        return provider.model_copy(deep=True)

    async def insert(self, provider: Provider) -> None:
        if provider.id in self._providers:
            raise ValueError(f"Provider '{provider.id}' already exists.")
        self._providers[provider.id] = provider.model_copy(deep=True)
        await self._persist()

    async def update_status_and_models(
        self,
        provider_id: str,
        status: ProviderStatus,
        *,
        models: list[str] | None = None,
        last_synced_at: float | None = None,
    ) -> Provider | None:
        fields: dict[str, Any] = {"status": status}
        if models is not None:
            fields["models"] = models
        if last_synced_at is not None:
            fields["last_synced_at"] = last_synced_at
        return await self.update_fields(provider_id, **fields)

    async def update_fields(self, provider_id: str, **fields: Any) -> Provider | None:
        unknown = sorted(set(fields) - _UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unsupported provider fields: {', '.join(unknown)}")
        current = self._providers.get(provider_id)
        if current is None:
            return None
        merged = current.model_dump()
        merged.update(fields)
        updated = Provider.model_validate(merged)
        self._providers[provider_id] = updated
        await self._persist()
        return updated.model_copy(deep=True)

    async def delete(self, provider_id: str) -> bool:
        if self._providers.pop(provider_id, None) is None:
            return False
        await self._persist()
        return True

    async def _persist(self) -> None:
        return None


class YamlProviderStore(InMemoryProviderStore):
    """Provider store backed by a YAML document rewritten atomically on change."""

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)
        self._write_lock = asyncio.Lock()

    async def load(self) -> int:
        document = await asyncio.to_thread(self._read_document)
        raw_providers = document.get("providers") if isinstance(document, dict) else None
        if not isinstance(raw_providers, list):
            return 0
        self._providers = {}
        for raw in raw_providers:
            if not isinstance(raw, dict):
                continue
            provider = Provider.model_validate(raw)
            self._providers[provider.id] = provider
        return len(self._providers)

    async def _persist(self) -> None:
        async with self._write_lock:
            document = {
                "providers": [
                    provider.model_dump(mode="json")
                    for provider in self._providers.values()
                ]
            }
            await asyncio.to_thread(self._write_document, document)

    def _read_document(self) -> Any:
        if not self.path.exists():
            return {}
        with self.path.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
        return payload or {}

    def _write_document(self, document: dict[str, Any]) -> None:
        write_yaml_atomic(self.path, document)


def write_yaml_atomic(path: Path, document: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
    try:
        with temp_path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(document, handle, sort_keys=False)
        temp_path.replace(path)
    except Exception:
        with contextlib.suppress(Exception):
            temp_path.unlink(missing_ok=True)
        raise
