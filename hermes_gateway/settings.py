from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    ingress_auth_required: bool = True
    gateway_api_keys: str = ""
    provider_store_path: str = "data/providers.yaml"
    runtime_overrides_path: str = "data/runtime_overrides.yaml"
    providers_seed_path: str | None = None
    usage_log_enabled: bool = True
    usage_log_path: str = "logs/gateway_usage.jsonl"
    usage_recent_entries: int = 200
    upstream_timeout_seconds: float = 120.0
    upstream_connect_timeout_seconds: float = 5.0
    probe_timeout_seconds: float = 5.0
    probe_interval_seconds: float = 5.0
    periodic_sync_interval_hours: float = 24.0
    sync_on_startup: bool = True
    chat_max_retries: int = 3
    cooldown_initial_ms: int = 30_000
    cooldown_max_ms: int = 1_800_000
    cooldown_quota_ms: int = 600_000
    sync_trust_window_seconds: float = 300.0
    routing_score_alpha: float = 0.2

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def gateway_api_keys_list(self) -> list[str]:
        return _split_csv(self.gateway_api_keys)

    @property
    def periodic_sync_interval_seconds(self) -> float:
        return max(0.0, self.periodic_sync_interval_hours) * 3600.0


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
