from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable
from uuid import uuid4

from hermes_gateway.providers.models import Provider, ProviderInput, ProviderStatus
from hermes_gateway.providers.store import ProviderStore

logger = logging.getLogger("uvicorn.error")

_RESYNC_FIELDS = frozenset({"name", "base_url", "api_key", "model_blacklist"})


class ProviderRegistry:
    def __init__(
        self,
        store: ProviderStore,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._store = store
        self._clock = clock or time.time
        self._models_lock = asyncio.Lock()

    @property
    def store(self) -> ProviderStore:
        return self._store

    async def list_all(self) -> list[Provider]:
        return await self._store.list_all()

    async def get(self, provider_id: str) -> Provider | None:
        return await self._store.get(provider_id)

    async def create(self, provider_input: ProviderInput) -> Provider:
        provider = Provider(
            id=uuid4().hex,
            name=provider_input.name,
            base_url=provider_input.base_url,
            api_key=provider_input.api_key,
            model_blacklist=list(provider_input.model_blacklist),
            status=ProviderStatus.PENDING,
            created_at=self._clock(),
        )
        await self._store.insert(provider)
        logger.info(
            "provider_created provider_id=%s name=%s base_url=%s",
            provider.id,
            provider.name,
            provider.base_url,
        )
        return provider

    async def update(
        self, provider_id: str, **changes: Any
    ) -> tuple[Provider | None, bool]:
        """Apply admin edits and report whether the provider must be resynced."""
        current = await self._store.get(provider_id)
        if current is None:
            return None, False
        unknown = sorted(set(changes) - _RESYNC_FIELDS)
        if unknown:
            raise ValueError(f"Unsupported provider fields: {', '.join(unknown)}")
        if isinstance(changes.get("base_url"), str):
            changes["base_url"] = changes["base_url"].strip().rstrip("/")
        effective = {
            key: value
            for key, value in changes.items()
            if value is not None and getattr(current, key) != value
        }
        if not effective:
            return current, False
        effective["status"] = ProviderStatus.PENDING
        updated = await self._store.update_fields(provider_id, **effective)
        logger.info(
            "provider_updated provider_id=%s fields=%s",
            provider_id,
            ",".join(sorted(key for key in effective if key != "api_key" and key != "status")),
        )
        return updated, updated is not None

    async def delete(self, provider_id: str) -> bool:
        deleted = await self._store.delete(provider_id)
        if deleted:
            logger.info("provider_deleted provider_id=%s", provider_id)
        return deleted

    async def set_status(
        self,
        provider_id: str,
        status: ProviderStatus,
        *,
        last_synced_at: float | None = None,
    ) -> Provider | None:
        return await self._store.update_status_and_models(
            provider_id, status, last_synced_at=last_synced_at
        )

    async def replace_models(
        self, provider_id: str, status: ProviderStatus, models: list[str]
    ) -> Provider | None:
        async with self._models_lock:
            return await self._store.update_status_and_models(
                provider_id, status, models=models
            )

    async def append_model(self, provider_id: str, model: str) -> Provider | None:
        async with self._models_lock:
            current = await self._store.get(provider_id)
            if current is None:
                return None
            if model in current.models:
                return current
            return await self._store.update_fields(
                provider_id, models=[*current.models, model]
            )

    async def remove_model(self, provider_id: str, model: str) -> Provider | None:
        async with self._models_lock:
            current = await self._store.get(provider_id)
            if current is None:
                return None
            if model not in current.models:
                return current
            return await self._store.update_fields(
                provider_id,
                models=[item for item in current.models if item != model],
            )

    async def touch_last_used(self, provider_id: str) -> None:
        await self._store.update_fields(provider_id, last_used_at=self._clock())
