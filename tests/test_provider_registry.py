from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
import yaml

from hermes_gateway.providers import (
    InMemoryProviderStore,
    Provider,
    ProviderInput,
    ProviderRegistry,
    ProviderStatus,
    YamlProviderStore,
)
from tests.gateway_test_utils import FakeClock


def test_create_assigns_id_and_pending_status() -> None:
    async def _run() -> None:
        registry = ProviderRegistry(InMemoryProviderStore(), clock=FakeClock(start=10.0))
        provider = await registry.create(
            ProviderInput(name=" acme ", base_url="https://api.acme.test/v1/", api_key="k")
        )
        assert provider.id
        assert provider.name == "acme"
        assert provider.base_url == "https://api.acme.test/v1"
        assert provider.status == ProviderStatus.PENDING
        assert provider.created_at == 10.0
        assert provider.models == []
        assert await registry.get(provider.id) == provider

    asyncio.run(_run())


def test_partial_updates_do_not_clobber_unrelated_fields() -> None:
    async def _run() -> None:
        store = InMemoryProviderStore()
        await store.insert(
            Provider(id="p1", name="one", base_url="http://one", api_key="secret", models=["a"])
        )

        updated = await store.update_status_and_models("p1", ProviderStatus.SYNCING)
        assert updated is not None
        assert updated.models == ["a"]
        assert updated.api_key == "secret"

        updated = await store.update_status_and_models(
            "p1", ProviderStatus.ACTIVE, models=["a", "b", "a"], last_synced_at=5.0
        )
        assert updated is not None
        assert updated.models == ["a", "b"]
        assert updated.last_synced_at == 5.0
        assert updated.name == "one"

        assert await store.update_status_and_models("missing", ProviderStatus.ACTIVE) is None
        with pytest.raises(ValueError):
            await store.update_fields("p1", id="other")

    asyncio.run(_run())


def test_store_returns_copies() -> None:
    async def _run() -> None:
        store = InMemoryProviderStore()
        await store.insert(Provider(id="p1", name="one", base_url="http://one"))
        fetched = await store.get("p1")
        assert fetched is not None
        fetched.models.append("leaked")
        refetched = await store.get("p1")
        assert refetched is not None
        assert refetched.models == []

    asyncio.run(_run())


def test_update_reports_resync_only_for_effective_changes() -> None:
    async def _run() -> None:
        registry = ProviderRegistry(InMemoryProviderStore())
        provider = await registry.create(
            ProviderInput(name="acme", base_url="http://acme", api_key="k")
        )
        await registry.set_status(provider.id, ProviderStatus.ACTIVE)

        unchanged, needs_resync = await registry.update(
            provider.id, name="acme", base_url="http://acme/"
        )
        assert needs_resync is False
        assert unchanged is not None
        assert unchanged.status == ProviderStatus.ACTIVE

        updated, needs_resync = await registry.update(provider.id, api_key="rotated")
        assert needs_resync is True
        assert updated is not None
        assert updated.api_key == "rotated"
        assert updated.status == ProviderStatus.PENDING

        missing, needs_resync = await registry.update("missing", name="x")
        assert missing is None
        assert needs_resync is False

    asyncio.run(_run())


def test_append_and_remove_model() -> None:
    async def _run() -> None:
        registry = ProviderRegistry(InMemoryProviderStore())
        provider = await registry.create(ProviderInput(name="acme", base_url="http://acme"))

        await registry.append_model(provider.id, "a")
        await registry.append_model(provider.id, "b")
        await registry.append_model(provider.id, "a")
        current = await registry.get(provider.id)
        assert current is not None
        assert current.models == ["a", "b"]

        current = await registry.remove_model(provider.id, "a")
        assert current is not None
        assert current.models == ["b"]

        assert await registry.append_model("missing", "a") is None
        assert await registry.delete(provider.id) is True
        assert await registry.delete(provider.id) is False

    asyncio.run(_run())


def test_yaml_store_persists_and_reloads(tmp_path: Path) -> None:
    path = tmp_path / "state" / "providers.yaml"

    async def _run() -> None:
        store = YamlProviderStore(path)
        await store.insert(
            Provider(
                id="p1",
                name="one",
                base_url="http://one",
                api_key="secret",
                models=["gpt-4"],
                status=ProviderStatus.ACTIVE,
                last_synced_at=12.5,
            )
        )
        await store.update_fields("p1", model_blacklist=["*embedding*"])

        reloaded = YamlProviderStore(path)
        assert await reloaded.load() == 1
        provider = await reloaded.get("p1")
        assert provider is not None
        assert provider.status == ProviderStatus.ACTIVE
        assert provider.models == ["gpt-4"]
        assert provider.model_blacklist == ["*embedding*"]
        assert provider.last_synced_at == 12.5

        assert await reloaded.delete("p1") is True

    asyncio.run(_run())

    document = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert document == {"providers": []}
    assert list(path.parent.glob("*.tmp")) == []


def test_yaml_store_load_missing_file(tmp_path: Path) -> None:
    store = YamlProviderStore(tmp_path / "absent.yaml")
    assert asyncio.run(store.load()) == 0


def test_public_view_hides_api_key() -> None:
    provider = Provider(id="p1", name="one", base_url="http://one", api_key="secret")
    view = provider.public_view()
    assert "api_key" not in view
    assert view["has_api_key"] is True
    assert view["status"] == "pending"
