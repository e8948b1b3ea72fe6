from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Collection

from hermes_gateway.cooldowns import CooldownEntry, CooldownRegistry
from hermes_gateway.gateway.usage_log import JsonlUsageLog
from hermes_gateway.model_identity import build_model_alias_maps
from hermes_gateway.probe import ModelProber
from hermes_gateway.providers.models import Provider
from hermes_gateway.providers.registry import ProviderRegistry
from hermes_gateway.score_tracker import RoutingScoreTracker

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class DispatcherConfig:
    sync_trust_window_seconds: float = 300.0


@dataclass(slots=True)
class DispatchSelection:
    provider: Provider
    resolved_model: str
    score: float


@dataclass(slots=True)
class _Candidate:
    provider: Provider
    model: str


class Dispatcher:
    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        cooldowns: CooldownRegistry,
        score_tracker: RoutingScoreTracker,
        prober: ModelProber,
        config: DispatcherConfig | None = None,
        usage_log: JsonlUsageLog | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._registry = registry
        self._cooldowns = cooldowns
        self._score_tracker = score_tracker
        self._prober = prober
        self._config = config or DispatcherConfig()
        self._usage_log = usage_log
        self._rng = rng or random.Random()
        self._clock = clock or time.time

    @property
    def cooldowns(self) -> CooldownRegistry:
        return self._cooldowns

    def clear_cooldown(self, provider_id: str, model: str) -> bool:
        cleared = self._cooldowns.clear(provider_id, model)
        if cleared:
            logger.info("cooldown_cleared provider_id=%s model=%s", provider_id, model)
        return cleared

    async def select_provider(
        self,
        requested_model: str,
        excluded_provider_ids: Collection[str] = (),
        *,
        request_id: str | None = None,
    ) -> DispatchSelection | None:
        providers = await self._registry.list_all()
        alias_maps = build_model_alias_maps(provider.models for provider in providers)
        acceptable = alias_maps.acceptable_variants(requested_model)

        supporting: list[_Candidate] = []
        for provider in providers:
            if not provider.is_routable:
                continue
            owned = sorted(model for model in provider.models if model in acceptable)
            if not owned:
                continue
            supporting.append(
                _Candidate(provider=provider, model=self._rng.choice(owned))
            )

        if not supporting:
            logger.info(
                "dispatch_model_unsupported request_id=%s requested_model=%s",
                request_id,
                requested_model,
            )
            return None

        best: DispatchSelection | None = None
        excluded_count = 0
        cooling_count = 0
        for candidate in supporting:
            if candidate.provider.id in excluded_provider_ids:
                excluded_count += 1
                continue
            if not await self._is_available(candidate, request_id=request_id):
                cooling_count += 1
                continue
            score = self._score_tracker.score_for(candidate.provider.id, candidate.model)
            if best is None or score > best.score:
                best = DispatchSelection(
                    provider=candidate.provider,
                    resolved_model=candidate.model,
                    score=score,
                )

        if best is None:
            logger.info(
                (
                    "dispatch_no_available_provider request_id=%s requested_model=%s "
                    "supporting=%d excluded=%d cooling_down=%d"
                ),
                request_id,
                requested_model,
                len(supporting),
                excluded_count,
                cooling_count,
            )
            return None

        logger.info(
            "dispatch_selected request_id=%s requested_model=%s provider_id=%s model=%s score=%.4f",
            request_id,
            requested_model,
            best.provider.id,
            best.resolved_model,
            best.score,
        )
        return best

    async def _is_available(
        self, candidate: _Candidate, *, request_id: str | None
    ) -> bool:
        provider = candidate.provider
        now = self._clock()
        if (
            provider.last_synced_at is not None
            and now - provider.last_synced_at <= self._config.sync_trust_window_seconds
        ):
            self.clear_cooldown(provider.id, candidate.model)
            return True

        entry = self._cooldowns.get(provider.id, candidate.model)
        if entry is None:
            return True
        if entry.until_epoch > now:
            return False

        result = await self._prober.probe(provider, candidate.model)
        self._score_tracker.record(
            provider.id,
            candidate.model,
            success=result.ok,
            latency_ms=result.latency_ms,
        )
        if result.ok:
            self.clear_cooldown(provider.id, candidate.model)
            logger.info(
                "dispatch_health_probe_ok request_id=%s provider_id=%s model=%s",
                request_id,
                provider.id,
                candidate.model,
            )
            return True

        renewed = self.penalize(provider.id, candidate.model)
        logger.info(
            "dispatch_health_probe_failed request_id=%s provider_id=%s model=%s status=%s backoff_ms=%d",
            request_id,
            provider.id,
            candidate.model,
            result.status_code,
            renewed.backoff_ms,
        )
        return False

    def penalize(
        self, provider_id: str, model: str, *, extended: bool = False
    ) -> CooldownEntry:
        entry = self._cooldowns.penalize(provider_id, model, extended=extended)
        if self._usage_log is not None:
            self._usage_log.increment("cooldown")
        logger.info(
            "cooldown_applied provider_id=%s model=%s backoff_ms=%d extended=%s",
            provider_id,
            model,
            entry.backoff_ms,
            extended,
        )
        return entry
