from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any

import yaml

from hermes_gateway.providers.store import write_yaml_atomic

logger = logging.getLogger("uvicorn.error")

OVERRIDE_FIELDS: dict[str, type] = {
    "chat_max_retries": int,
    "periodic_sync_interval_hours": float,
    "cooldown_initial_ms": int,
    "cooldown_max_ms": int,
}


class RuntimeOverridesStore:
    """YAML document holding admin-tuned runtime values across restarts."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._write_lock = asyncio.Lock()

    async def load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            raw = await asyncio.to_thread(self._read_document)
        except (OSError, yaml.YAMLError) as exc:
            logger.warning(
                "runtime_overrides_load_failed path=%s error=%s", self.path, exc
            )
            return {}
        values = parse_overrides(raw.get("runtime") if isinstance(raw, dict) else None)
        logger.info(
            "runtime_overrides_loaded path=%s fields=%s",
            self.path,
            ",".join(sorted(values)) or "-",
        )
        return values

    async def write(self, values: dict[str, Any]) -> None:
        document = {
            "generated_at_epoch": time.time(),
            "runtime": {key: values[key] for key in OVERRIDE_FIELDS if key in values},
        }
        async with self._write_lock:
            await asyncio.to_thread(write_yaml_atomic, self.path, document)

    def _read_document(self) -> Any:
        with self.path.open("r", encoding="utf-8") as handle:
            return yaml.safe_load(handle)


def parse_overrides(raw: Any) -> dict[str, Any]:
    if not isinstance(raw, dict):
        return {}
    values: dict[str, Any] = {}
    for key, kind in OVERRIDE_FIELDS.items():
        value = raw.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            if value is not None:
                logger.warning("runtime_override_ignored field=%s value=%r", key, value)
            continue
        if value < 0 or (kind is int and value < 1):
            logger.warning("runtime_override_ignored field=%s value=%r", key, value)
            continue
        values[key] = kind(value)
    return values
