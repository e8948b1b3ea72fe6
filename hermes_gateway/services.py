from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx

from hermes_gateway.cooldowns import CooldownConfig, CooldownRegistry
from hermes_gateway.dispatcher import Dispatcher, DispatcherConfig
from hermes_gateway.errors import HeuristicErrorClassifier, UpstreamErrorClassifier
from hermes_gateway.gateway.usage_log import JsonlUsageLog
from hermes_gateway.orchestrator import RequestOrchestrator
from hermes_gateway.probe import ModelProber
from hermes_gateway.providers.manager import ProviderManager, load_provider_seed
from hermes_gateway.providers.registry import ProviderRegistry
from hermes_gateway.providers.store import (
    InMemoryProviderStore,
    ProviderStore,
    YamlProviderStore,
)
from hermes_gateway.proxy import ProxyForwarder
from hermes_gateway.runtime.overrides import RuntimeOverridesStore
from hermes_gateway.runtime.tasks import TaskSupervisor
from hermes_gateway.score_tracker import RoutingScoreTracker
from hermes_gateway.settings import Settings
from hermes_gateway.sync_engine import ProviderSyncEngine

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class GatewayServices:
    settings: Settings
    store: ProviderStore
    registry: ProviderRegistry
    usage_log: JsonlUsageLog
    supervisor: TaskSupervisor
    cooldowns: CooldownRegistry
    score_tracker: RoutingScoreTracker
    prober: ModelProber
    sync_engine: ProviderSyncEngine
    dispatcher: Dispatcher
    forwarder: ProxyForwarder
    orchestrator: RequestOrchestrator
    manager: ProviderManager
    overrides: RuntimeOverridesStore | None = None
    applied_overrides: dict[str, Any] = field(default_factory=dict)

    async def start(self) -> None:
        if isinstance(self.store, YamlProviderStore):
            loaded = await self.store.load()
            logger.info(
                "provider_store_loaded path=%s providers=%d", self.store.path, loaded
            )
        if self.settings.providers_seed_path:
            seeds = load_provider_seed(self.settings.providers_seed_path)
            created = await self.manager.import_providers(seeds)
            logger.info(
                "provider_seed_imported path=%s seeds=%d created=%d",
                self.settings.providers_seed_path,
                len(seeds),
                len(created),
            )
        if self.settings.sync_on_startup:
            scheduled = await self.manager.schedule_unsynced()
            logger.info("sync_startup_scheduled providers=%d", scheduled)
        await self.sync_engine.start(self.settings.periodic_sync_interval_seconds)
        if self.overrides is not None:
            values = await self.overrides.load()
            if values:
                await self.configure_runtime(**values, persist=False)

    async def stop(self) -> None:
        await self.sync_engine.stop()
        await self.supervisor.cancel_all()
        await self.forwarder.close()
        await self.prober.close()
        self.usage_log.close()

    async def configure_runtime(
        self,
        *,
        chat_max_retries: int | None = None,
        periodic_sync_interval_hours: float | None = None,
        cooldown_initial_ms: int | None = None,
        cooldown_max_ms: int | None = None,
        persist: bool = True,
    ) -> dict[str, Any]:
        if chat_max_retries is not None:
            self.orchestrator.max_attempts = chat_max_retries
        if periodic_sync_interval_hours is not None:
            await self.sync_engine.set_interval(
                max(0.0, float(periodic_sync_interval_hours)) * 3600.0
            )
        config = self.cooldowns.config
        if cooldown_initial_ms is not None:
            config.initial_backoff_ms = max(1, int(cooldown_initial_ms))
        if cooldown_max_ms is not None:
            config.max_backoff_ms = max(config.initial_backoff_ms, int(cooldown_max_ms))
        runtime = self.runtime_settings()
        logger.info(
            "runtime_configured chat_max_retries=%d periodic_sync_interval_hours=%s "
            "cooldown_initial_ms=%d cooldown_max_ms=%d",
            runtime["chat_max_retries"],
            runtime["periodic_sync_interval_hours"],
            runtime["cooldown_initial_ms"],
            runtime["cooldown_max_ms"],
        )
        changed = {
            "chat_max_retries": chat_max_retries,
            "periodic_sync_interval_hours": periodic_sync_interval_hours,
            "cooldown_initial_ms": cooldown_initial_ms,
            "cooldown_max_ms": cooldown_max_ms,
        }
        for key, value in changed.items():
            if value is not None:
                self.applied_overrides[key] = runtime[key]
        if persist and self.overrides is not None:
            await self.overrides.write(self.applied_overrides)
        return runtime

    def runtime_settings(self) -> dict[str, Any]:
        config = self.cooldowns.config
        return {
            "chat_max_retries": self.orchestrator.max_attempts,
            "periodic_sync_interval_hours": round(
                self.sync_engine.periodic_interval_seconds / 3600.0, 4
            ),
            "cooldown_initial_ms": config.initial_backoff_ms,
            "cooldown_max_ms": config.max_backoff_ms,
            "cooldown_quota_ms": config.extended_backoff_ms,
            "worst_case_latency_seconds": self.orchestrator.worst_case_latency_seconds,
        }


def build_gateway_services(
    settings: Settings,
    *,
    store: ProviderStore | None = None,
    classifier: UpstreamErrorClassifier | None = None,
    upstream_client: httpx.AsyncClient | None = None,
    probe_client: httpx.AsyncClient | None = None,
    sleep: Callable[[float], Awaitable[Any]] | None = None,
    clock: Callable[[], float] | None = None,
) -> GatewayServices:
    if store is None:
        if settings.provider_store_path:
            store = YamlProviderStore(settings.provider_store_path)
        else:
            store = InMemoryProviderStore()
    classifier = classifier or HeuristicErrorClassifier()

    usage_log = JsonlUsageLog(
        path=settings.usage_log_path,
        enabled=settings.usage_log_enabled,
        recent_entries=settings.usage_recent_entries,
    )
    supervisor = TaskSupervisor(usage_log=usage_log)
    registry = ProviderRegistry(store, clock=clock)
    cooldowns = CooldownRegistry(
        CooldownConfig(
            initial_backoff_ms=max(1, settings.cooldown_initial_ms),
            max_backoff_ms=max(settings.cooldown_initial_ms, settings.cooldown_max_ms),
            extended_backoff_ms=max(1, settings.cooldown_quota_ms),
        ),
        clock=clock,
    )
    score_tracker = RoutingScoreTracker(alpha=settings.routing_score_alpha, clock=clock)
    prober = ModelProber(
        timeout_seconds=settings.probe_timeout_seconds,
        classifier=classifier,
        client=probe_client,
    )
    sync_engine = ProviderSyncEngine(
        registry=registry,
        prober=prober,
        cooldowns=cooldowns,
        score_tracker=score_tracker,
        usage_log=usage_log,
        supervisor=supervisor,
        probe_interval_seconds=settings.probe_interval_seconds,
        sleep=sleep,
        clock=clock,
    )
    dispatcher = Dispatcher(
        registry=registry,
        cooldowns=cooldowns,
        score_tracker=score_tracker,
        prober=prober,
        config=DispatcherConfig(
            sync_trust_window_seconds=max(0.0, settings.sync_trust_window_seconds)
        ),
        usage_log=usage_log,
        clock=clock,
    )
    forwarder = ProxyForwarder(
        dispatcher=dispatcher,
        registry=registry,
        score_tracker=score_tracker,
        usage_log=usage_log,
        sync_engine=sync_engine,
        classifier=classifier,
        timeout_seconds=settings.upstream_timeout_seconds,
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
        client=upstream_client,
    )
    orchestrator = RequestOrchestrator(
        dispatcher=dispatcher,
        forwarder=forwarder,
        usage_log=usage_log,
        max_attempts=settings.chat_max_retries,
        attempt_timeout_seconds=settings.upstream_timeout_seconds,
    )
    manager = ProviderManager(
        registry=registry,
        sync_engine=sync_engine,
        cooldowns=cooldowns,
        score_tracker=score_tracker,
    )
    overrides = (
        RuntimeOverridesStore(settings.runtime_overrides_path)
        if settings.runtime_overrides_path
        else None
    )
    return GatewayServices(
        settings=settings,
        store=store,
        registry=registry,
        usage_log=usage_log,
        supervisor=supervisor,
        cooldowns=cooldowns,
        score_tracker=score_tracker,
        prober=prober,
        sync_engine=sync_engine,
        dispatcher=dispatcher,
        forwarder=forwarder,
        orchestrator=orchestrator,
        manager=manager,
        overrides=overrides,
    )
