"""
Persistence Provider Package

Pluggable storage for the memory store. The store only talks to the
PersistenceProvider interface; backends are picked by name from
args/memory.yaml (provider.active).

Architecture:
    MemoryStore → PersistenceProvider (abstract)
                        ↓
                ┌───────┴────────┐
                ↓                ↓
             Native          Ephemeral
            (SQLite)        (in-process)

Usage:
    from chatmem.memory.providers import get_provider

    provider = get_provider("native", {"database_path": "data/chat_memory.db"})
    await provider.initialize()
"""

from .base import (
    DuplicateMemoryError,
    ErrorFilter,
    HealthStatus,
    MemoryFilter,
    OrderBy,
    PersistenceError,
    PersistenceProvider,
)
from .ephemeral import EphemeralProvider
from .native import NativeProvider


__all__ = [
    "DuplicateMemoryError",
    "ErrorFilter",
    "EphemeralProvider",
    "HealthStatus",
    "MemoryFilter",
    "NativeProvider",
    "OrderBy",
    "PersistenceError",
    "PersistenceProvider",
    "get_provider",
]


PROVIDERS: dict[str, type[PersistenceProvider]] = {
    "native": NativeProvider,
    "ephemeral": EphemeralProvider,
}


def get_provider(name: str, config: dict | None = None) -> PersistenceProvider:
    """
    Get a provider instance by name.

    Args:
        name: Provider name (native, ephemeral)
        config: Provider configuration

    Returns:
        PersistenceProvider instance

    Raises:
        ValueError: If provider not found
    """
    provider_class = PROVIDERS.get(name)
    if provider_class is None:
        raise ValueError(f"Unknown provider: {name}. Available: {list(PROVIDERS)}")
    return provider_class(config or {})
