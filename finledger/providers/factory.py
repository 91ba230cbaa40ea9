from __future__ import annotations

from typing import Callable

from finledger.core.errors import ConfigurationError
from finledger.providers.base import SyncProvider
from finledger.providers.plaid import PlaidClient


ProviderFactory = Callable[[], SyncProvider]

_DEFAULT_FACTORIES: dict[str, ProviderFactory] = {
    "plaid": PlaidClient,
}
_overrides: dict[str, ProviderFactory] = {}


def get_sync_provider(name: str) -> SyncProvider:
    # Resolve the pull-sync client for a connection's provider.
    factory = _overrides.get(name) or _DEFAULT_FACTORIES.get(name)
    if factory is None:
        raise ConfigurationError(f"provider '{name}' does not support pull sync")
    return factory()


def override_provider(name: str, factory: ProviderFactory) -> None:
    # Allow tests and local runs to swap in scripted providers.
    _overrides[name] = factory


def reset_provider_overrides() -> None:
    _overrides.clear()
