from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable


@dataclass(slots=True)
class CooldownConfig:
    initial_backoff_ms: int = 30_000
    max_backoff_ms: int = 1_800_000
    extended_backoff_ms: int = 600_000


@dataclass(slots=True)
class CooldownEntry:
    until_epoch: float
    backoff_ms: int


class CooldownRegistry:
    """Per (provider, model) exclusion windows with capped exponential backoff.

    None of the methods await, which keeps every read-modify-write atomic with
    respect to other tasks on the event loop.
    """

    def __init__(
        self,
        config: CooldownConfig,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._config = config
        self._clock = clock or time.time
        self._entries: dict[tuple[str, str], CooldownEntry] = {}

    @property
    def config(self) -> CooldownConfig:
        return self._config

    def get(self, provider_id: str, model: str) -> CooldownEntry | None:
        return self._entries.get((provider_id, model))

    def is_cooling_down(self, provider_id: str, model: str) -> bool:
        entry = self._entries.get((provider_id, model))
        return entry is not None and entry.until_epoch > self._clock()

    def penalize(
        self, provider_id: str, model: str, *, extended: bool = False
    ) -> CooldownEntry:
        key = (provider_id, model)
        existing = self._entries.get(key)
        if existing is not None:
            backoff_ms = existing.backoff_ms * 2
        else:
            backoff_ms = self._config.initial_backoff_ms
        if extended:
            backoff_ms = max(backoff_ms, self._config.extended_backoff_ms)
        backoff_ms = max(1, min(backoff_ms, self._config.max_backoff_ms))
        entry = CooldownEntry(
            until_epoch=self._clock() + (backoff_ms / 1000.0),
            backoff_ms=backoff_ms,
        )
        self._entries[key] = entry
        return entry

    def clear(self, provider_id: str, model: str) -> bool:
        return self._entries.pop((provider_id, model), None) is not None

    def clear_provider(self, provider_id: str) -> int:
        keys = [key for key in self._entries if key[0] == provider_id]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def snapshot(self) -> list[dict[str, int | float | str | bool]]:
        now = self._clock()
        return [
            {
                "provider_id": provider_id,
                "model": model,
                "until_epoch": round(entry.until_epoch, 3),
                "backoff_ms": entry.backoff_ms,
                "remaining_ms": max(0, int((entry.until_epoch - now) * 1000)),
                "expired": entry.until_epoch <= now,
            }
            for (provider_id, model), entry in sorted(self._entries.items())
        ]
