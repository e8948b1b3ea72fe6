from __future__ import annotations

from hermes_gateway.cooldowns import CooldownConfig, CooldownRegistry
from tests.gateway_test_utils import FakeClock


def _registry(clock: FakeClock, **overrides: int) -> CooldownRegistry:
    config = CooldownConfig(
        initial_backoff_ms=overrides.get("initial", 1_000),
        max_backoff_ms=overrides.get("maximum", 5_000),
        extended_backoff_ms=overrides.get("extended", 4_000),
    )
    return CooldownRegistry(config, clock=clock)


def test_penalize_seeds_then_doubles_up_to_cap() -> None:
    clock = FakeClock(start=100.0)
    cooldowns = _registry(clock)

    assert cooldowns.penalize("p1", "m").backoff_ms == 1_000
    assert cooldowns.penalize("p1", "m").backoff_ms == 2_000
    assert cooldowns.penalize("p1", "m").backoff_ms == 4_000
    entry = cooldowns.penalize("p1", "m")
    assert entry.backoff_ms == 5_000
    assert entry.until_epoch == 105.0
    assert cooldowns.penalize("p1", "m").backoff_ms == 5_000


def test_extended_penalty_uses_quota_floor() -> None:
    cooldowns = _registry(FakeClock())
    assert cooldowns.penalize("p1", "m", extended=True).backoff_ms == 4_000
    assert cooldowns.penalize("p1", "m", extended=True).backoff_ms == 5_000


def test_cooldown_expiry_and_clear() -> None:
    clock = FakeClock(start=0.0)
    cooldowns = _registry(clock)
    cooldowns.penalize("p1", "m")
    assert cooldowns.is_cooling_down("p1", "m") is True

    clock.advance(1.0)
    assert cooldowns.is_cooling_down("p1", "m") is False
    assert cooldowns.get("p1", "m") is not None

    assert cooldowns.clear("p1", "m") is True
    assert cooldowns.get("p1", "m") is None
    assert cooldowns.clear("p1", "m") is False


def test_clear_provider_only_drops_that_provider() -> None:
    cooldowns = _registry(FakeClock())
    cooldowns.penalize("p1", "a")
    cooldowns.penalize("p1", "b")
    cooldowns.penalize("p2", "a")

    assert cooldowns.clear_provider("p1") == 2
    assert [(item["provider_id"], item["model"]) for item in cooldowns.snapshot()] == [
        ("p2", "a")
    ]
