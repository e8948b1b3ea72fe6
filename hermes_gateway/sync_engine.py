from __future__ import annotations

import asyncio
import fnmatch
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from hermes_gateway.cooldowns import CooldownRegistry
from hermes_gateway.errors import CatalogFetchError
from hermes_gateway.gateway.usage_log import JsonlUsageLog
from hermes_gateway.probe import ModelProber
from hermes_gateway.providers.models import Provider, ProviderStatus
from hermes_gateway.providers.registry import ProviderRegistry
from hermes_gateway.runtime.tasks import TaskSupervisor
from hermes_gateway.score_tracker import RoutingScoreTracker

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class SyncOutcome:
    provider_id: str
    status: ProviderStatus
    verified_models: list[str] = field(default_factory=list)
    failed_models: list[str] = field(default_factory=list)
    error: str | None = None


def filter_candidate_models(catalog: list[str], blacklist: list[str]) -> list[str]:
    patterns = [pattern.lower() for pattern in blacklist if pattern.strip()]
    candidates: list[str] = []
    seen: set[str] = set()
    for model in catalog:
        if model in seen:
            continue
        seen.add(model)
        lowered = model.lower()
        if any(fnmatch.fnmatchcase(lowered, pattern) for pattern in patterns):
            continue
        candidates.append(model)
    return candidates


class ProviderSyncEngine:
    """Discovers and verifies each provider's working model set.

    Runs for one provider are serialized and probe strictly one model at a time
    with a pause before every probe. Runs for different providers proceed
    concurrently. Scheduling keeps at most one run waiting behind the active
    one per provider.
    """

    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        prober: ModelProber,
        cooldowns: CooldownRegistry,
        score_tracker: RoutingScoreTracker,
        usage_log: JsonlUsageLog,
        supervisor: TaskSupervisor,
        probe_interval_seconds: float = 5.0,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._registry = registry
        self._prober = prober
        self._cooldowns = cooldowns
        self._score_tracker = score_tracker
        self._usage_log = usage_log
        self._supervisor = supervisor
        self._probe_interval_seconds = max(0.0, float(probe_interval_seconds))
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.time
        self._locks: dict[str, asyncio.Lock] = {}
        self._queued: dict[str, asyncio.Task[SyncOutcome | None]] = {}
        self._periodic_interval_seconds = 0.0
        self._periodic_task: asyncio.Task[None] | None = None

    def schedule_sync(
        self, provider_id: str, *, reason: str
    ) -> asyncio.Task[SyncOutcome | None]:
        queued = self._queued.get(provider_id)
        if queued is not None and not queued.done():
            logger.info(
                "sync_coalesced provider_id=%s reason=%s", provider_id, reason
            )
            return queued
        task = self._supervisor.spawn(
            self._run_queued(provider_id, reason),
            name=f"provider-sync-{provider_id}",
        )
        self._queued[provider_id] = task
        return task

    async def _run_queued(self, provider_id: str, reason: str) -> SyncOutcome | None:
        lock = self._locks.setdefault(provider_id, asyncio.Lock())
        async with lock:
            if self._queued.get(provider_id) is asyncio.current_task():
                del self._queued[provider_id]
            return await self._sync_locked(provider_id, reason)

    async def sync_provider(
        self, provider_id: str, *, reason: str = "manual"
    ) -> SyncOutcome | None:
        lock = self._locks.setdefault(provider_id, asyncio.Lock())
        async with lock:
            return await self._sync_locked(provider_id, reason)

    def handle_model_not_found(
        self, provider_id: str, model: str
    ) -> asyncio.Task[SyncOutcome | None]:
        return self._supervisor.spawn(
            self._remove_model_and_resync(provider_id, model),
            name=f"provider-model-removal-{provider_id}",
        )

    async def _remove_model_and_resync(
        self, provider_id: str, model: str
    ) -> SyncOutcome | None:
        provider = await self._registry.remove_model(provider_id, model)
        if provider is None:
            return None
        logger.warning(
            "sync_model_removed provider_id=%s model=%s reason=upstream_model_not_found",
            provider_id,
            model,
        )
        self._usage_log.log_sync_event(
            provider_id=provider_id,
            provider_name=provider.name,
            model=model,
            result="failure",
            message="Model reported as not found by upstream; scheduling resync.",
        )
        return await self.schedule_sync(provider_id, reason="model_not_found")

    def forget_provider(self, provider_id: str) -> None:
        queued = self._queued.pop(provider_id, None)
        if queued is not None and not queued.done():
            queued.cancel()
        lock = self._locks.get(provider_id)
        if lock is not None and not lock.locked():
            del self._locks[provider_id]

    async def _sync_locked(self, provider_id: str, reason: str) -> SyncOutcome | None:
        provider = await self._registry.set_status(provider_id, ProviderStatus.SYNCING)
        if provider is None:
            logger.info("sync_skipped provider_id=%s reason=deleted", provider_id)
            return None
        logger.info(
            "sync_started provider_id=%s name=%s reason=%s",
            provider_id,
            provider.name,
            reason,
        )

        try:
            catalog = await self._prober.fetch_catalog(provider)
        except CatalogFetchError as exc:
            await self._registry.set_status(provider_id, ProviderStatus.ERROR)
            self._usage_log.log_sync_event(
                provider_id=provider_id,
                provider_name=provider.name,
                model=None,
                result="failure",
                message=str(exc),
            )
            logger.warning(
                "sync_catalog_failed provider_id=%s name=%s error=%s",
                provider_id,
                provider.name,
                exc,
            )
            return SyncOutcome(
                provider_id=provider_id, status=ProviderStatus.ERROR, error=str(exc)
            )

        candidates = filter_candidate_models(catalog, provider.model_blacklist)
        logger.info(
            "sync_catalog_fetched provider_id=%s advertised=%d candidates=%d",
            provider_id,
            len(catalog),
            len(candidates),
        )
        if (
            await self._registry.replace_models(
                provider_id, ProviderStatus.SYNCING, []
            )
            is None
        ):
            return None

        outcome = SyncOutcome(provider_id=provider_id, status=ProviderStatus.SYNCING)
        for model in candidates:
            await self._sleep(self._probe_interval_seconds)
            if not await self._still_current(provider):
                return None
            result = await self._prober.probe(provider, model)
            if not await self._still_current(provider):
                return None
            self._score_tracker.record(
                provider_id, model, success=result.ok, latency_ms=result.latency_ms
            )
            if not result.ok:
                outcome.failed_models.append(model)
                kind = result.kind.value if result.kind is not None else "unknown"
                self._usage_log.log_sync_event(
                    provider_id=provider_id,
                    provider_name=provider.name,
                    model=model,
                    result="failure",
                    message=f"{kind} status={result.status_code}: {result.error or ''}".strip(),
                )
                logger.info(
                    "sync_probe_failed provider_id=%s model=%s kind=%s status=%s",
                    provider_id,
                    model,
                    kind,
                    result.status_code,
                )
                continue

            if await self._registry.append_model(provider_id, model) is None:
                logger.info(
                    "sync_aborted provider_id=%s reason=deleted model=%s",
                    provider_id,
                    model,
                )
                return None
            self._cooldowns.clear(provider_id, model)
            outcome.verified_models.append(model)
            self._usage_log.log_sync_event(
                provider_id=provider_id,
                provider_name=provider.name,
                model=model,
                result="success",
                message=f"protocol={result.protocol} latency_ms={result.latency_ms:.1f}",
            )
            logger.info(
                "sync_probe_ok provider_id=%s model=%s protocol=%s latency_ms=%.1f",
                provider_id,
                model,
                result.protocol,
                result.latency_ms,
            )

        if not await self._still_current(provider):
            return None
        finished = await self._registry.set_status(
            provider_id, ProviderStatus.ACTIVE, last_synced_at=self._clock()
        )
        if finished is None:
            return None
        outcome.status = ProviderStatus.ACTIVE
        logger.info(
            "sync_completed provider_id=%s verified=%d failed=%d",
            provider_id,
            len(outcome.verified_models),
            len(outcome.failed_models),
        )
        return outcome

    async def _still_current(self, snapshot: Provider) -> bool:
        current = await self._registry.get(snapshot.id)
        if current is None:
            logger.info("sync_aborted provider_id=%s reason=deleted", snapshot.id)
            return False
        if (
            current.base_url != snapshot.base_url
            or current.api_key != snapshot.api_key
            or current.model_blacklist != snapshot.model_blacklist
        ):
            # The update that changed these fields queued its own run.
            logger.info("sync_superseded provider_id=%s", snapshot.id)
            return False
        return True

    @property
    def periodic_interval_seconds(self) -> float:
        return self._periodic_interval_seconds

    async def start(self, interval_seconds: float) -> None:
        self._periodic_interval_seconds = max(0.0, float(interval_seconds))
        if self._periodic_interval_seconds <= 0 or self._periodic_task is not None:
            return
        self._periodic_task = asyncio.create_task(
            self._run_periodic(self._periodic_interval_seconds),
            name="provider-periodic-sync",
        )

    async def set_interval(self, interval_seconds: float) -> None:
        await self.stop()
        await self.start(interval_seconds)
        logger.info(
            "sync_periodic_interval_changed interval_seconds=%.1f",
            self._periodic_interval_seconds,
        )

    async def stop(self) -> None:
        if self._periodic_task is None:
            return
        self._periodic_task.cancel()
        try:
            await self._periodic_task
        except asyncio.CancelledError:
            pass
        finally:
            self._periodic_task = None

    async def sync_all(self, *, reason: str) -> int:
        providers = await self._registry.list_all()
        for provider in providers:
            self.schedule_sync(provider.id, reason=reason)
        return len(providers)

    async def _run_periodic(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                scheduled = await self.sync_all(reason="periodic")
                logger.info("sync_periodic_triggered providers=%d", scheduled)
            except Exception as exc:
                logger.warning("sync_periodic_failed error=%s", exc)
