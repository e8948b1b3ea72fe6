from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from hermes_gateway.cooldowns import CooldownRegistry
from hermes_gateway.errors import ProviderNotFoundError
from hermes_gateway.providers.models import Provider, ProviderInput, ProviderStatus
from hermes_gateway.providers.registry import ProviderRegistry
from hermes_gateway.score_tracker import RoutingScoreTracker
from hermes_gateway.sync_engine import ProviderSyncEngine

logger = logging.getLogger("uvicorn.error")


def load_provider_seed(path: str | Path) -> list[ProviderInput]:
    seed_path = Path(path)
    if not seed_path.exists():
        raise FileNotFoundError(f"Provider seed file not found: {seed_path}")
    with seed_path.open("r", encoding="utf-8") as handle:
        document = yaml.safe_load(handle) or {}
    return parse_provider_document(document)


def parse_provider_document(document: Any) -> list[ProviderInput]:
    if isinstance(document, dict):
        raw_providers = document.get("providers", [])
    else:
        raw_providers = document
    if not isinstance(raw_providers, list):
        raise ValueError("Expected a 'providers' list.")
    providers: list[ProviderInput] = []
    for index, raw in enumerate(raw_providers):
        if not isinstance(raw, dict):
            raise ValueError(f"providers[{index}] must be a mapping.")
        try:
            providers.append(ProviderInput.model_validate(raw))
        except ValidationError as exc:
            raise ValueError(f"providers[{index}] is invalid: {exc}") from exc
    return providers


class ProviderManager:
    """Provider lifecycle operations that keep the sync engine and routing state in step."""

    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        sync_engine: ProviderSyncEngine,
        cooldowns: CooldownRegistry,
        score_tracker: RoutingScoreTracker,
    ) -> None:
        self._registry = registry
        self._sync_engine = sync_engine
        self._cooldowns = cooldowns
        self._score_tracker = score_tracker

    async def create_provider(self, provider_input: ProviderInput) -> Provider:
        provider = await self._registry.create(provider_input)
        self._sync_engine.schedule_sync(provider.id, reason="created")
        return provider

    async def update_provider(self, provider_id: str, **changes: Any) -> Provider:
        provider, needs_resync = await self._registry.update(provider_id, **changes)
        if provider is None:
            raise ProviderNotFoundError(provider_id)
        if needs_resync:
            self._cooldowns.clear_provider(provider_id)
            self._sync_engine.schedule_sync(provider_id, reason="updated")
        return provider

    async def delete_provider(self, provider_id: str) -> bool:
        deleted = await self._registry.delete(provider_id)
        if deleted:
            self._sync_engine.forget_provider(provider_id)
            self._cooldowns.clear_provider(provider_id)
            self._score_tracker.forget_provider(provider_id)
        return deleted

    async def resync_provider(self, provider_id: str) -> asyncio.Task[Any]:
        provider = await self._registry.set_status(provider_id, ProviderStatus.PENDING)
        if provider is None:
            raise ProviderNotFoundError(provider_id)
        return self._sync_engine.schedule_sync(provider_id, reason="manual")

    async def resync_all(self) -> int:
        return await self._sync_engine.sync_all(reason="manual")

    async def import_providers(self, provider_inputs: list[ProviderInput]) -> list[Provider]:
        existing = {
            (provider.name, provider.base_url)
            for provider in await self._registry.list_all()
        }
        created: list[Provider] = []
        for provider_input in provider_inputs:
            key = (provider_input.name, provider_input.base_url)
            if key in existing:
                logger.info(
                    "provider_import_skipped name=%s base_url=%s reason=exists",
                    provider_input.name,
                    provider_input.base_url,
                )
                continue
            existing.add(key)
            created.append(await self.create_provider(provider_input))
        return created

    async def export_providers(self, *, include_api_keys: bool = True) -> dict[str, Any]:
        exported: list[dict[str, Any]] = []
        for provider in await self._registry.list_all():
            entry: dict[str, Any] = {
                "name": provider.name,
                "base_url": provider.base_url,
            }
            if include_api_keys:
                entry["api_key"] = provider.api_key
            if provider.model_blacklist:
                entry["model_blacklist"] = list(provider.model_blacklist)
            exported.append(entry)
        return {"providers": exported}

    async def schedule_unsynced(self) -> int:
        scheduled = 0
        for provider in await self._registry.list_all():
            if provider.status == ProviderStatus.ACTIVE:
                continue
            self._sync_engine.schedule_sync(provider.id, reason="startup")
            scheduled += 1
        return scheduled
