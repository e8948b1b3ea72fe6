from hermes_gateway.providers.models import (
    Provider,
    ProviderInput,
    ProviderStatus,
)
from hermes_gateway.providers.registry import ProviderRegistry
from hermes_gateway.providers.store import (
    InMemoryProviderStore,
    ProviderStore,
    YamlProviderStore,
)

__all__ = [
    "InMemoryProviderStore",
    "Provider",
    "ProviderInput",
    "ProviderRegistry",
    "ProviderStatus",
    "ProviderStore",
    "YamlProviderStore",
]
