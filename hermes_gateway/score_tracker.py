from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Any, Callable

DEFAULT_SUCCESS_EWMA = 0.7
DEFAULT_LATENCY_EWMA_MS = 1000.0
SUCCESS_WEIGHT = 0.7
LATENCY_WEIGHT = 0.3
LATENCY_SCALE_MS = 800.0
MAX_JITTER = 0.01


@dataclass(slots=True)
class RoutingStat:
    success_ewma: float = DEFAULT_SUCCESS_EWMA
    latency_ewma_ms: float = DEFAULT_LATENCY_EWMA_MS
    samples: int = 0
    last_updated: float = 0.0


def _ewma(previous: float, value: float, alpha: float) -> float:
    return (alpha * value) + ((1.0 - alpha) * previous)


class RoutingScoreTracker:
    """Rolling success and latency estimates per (provider, model) pair.

    ``record`` never awaits, so each read-modify-write of a stat completes
    between two suspension points of the event loop and concurrent requests
    cannot lose each other's updates.
    """

    def __init__(
        self,
        *,
        alpha: float = 0.2,
        rng: Callable[[], float] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._alpha = max(0.01, min(1.0, alpha))
        self._rng = rng or random.random
        self._clock = clock or time.time
        self._stats: dict[tuple[str, str], RoutingStat] = {}

    @property
    def alpha(self) -> float:
        return self._alpha

    def record(
        self,
        provider_id: str,
        model: str,
        *,
        success: bool,
        latency_ms: float | None = None,
    ) -> RoutingStat:
        stat = self._stats.setdefault((provider_id, model), RoutingStat())
        stat.success_ewma = _ewma(stat.success_ewma, 1.0 if success else 0.0, self._alpha)
        if latency_ms is not None:
            stat.latency_ewma_ms = _ewma(
                stat.latency_ewma_ms, max(0.0, float(latency_ms)), self._alpha
            )
        stat.samples += 1
        stat.last_updated = self._clock()
        return stat

    def stat_for(self, provider_id: str, model: str) -> RoutingStat:
        stat = self._stats.get((provider_id, model))
        if stat is None:
            return RoutingStat()
        return stat

    def score_for(self, provider_id: str, model: str) -> float:
        stat = self.stat_for(provider_id, model)
        latency_term = 1.0 / (1.0 + (stat.latency_ewma_ms / LATENCY_SCALE_MS))
        jitter = self._rng() * MAX_JITTER
        return (SUCCESS_WEIGHT * stat.success_ewma) + (LATENCY_WEIGHT * latency_term) + jitter

    def forget_provider(self, provider_id: str) -> None:
        for key in [key for key in self._stats if key[0] == provider_id]:
            del self._stats[key]

    def snapshot(self) -> list[dict[str, Any]]:
        return [
            {
                "provider_id": provider_id,
                "model": model,
                "success_ewma": round(stat.success_ewma, 4),
                "latency_ewma_ms": round(stat.latency_ewma_ms, 3),
                "samples": stat.samples,
                "last_updated": round(stat.last_updated, 3),
            }
            for (provider_id, model), stat in sorted(self._stats.items())
        ]
