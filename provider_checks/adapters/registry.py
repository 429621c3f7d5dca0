from __future__ import annotations

from typing import Callable, TYPE_CHECKING

from provider_checks.errors import ConfigurationError

if TYPE_CHECKING:
    from provider_checks.adapters.base import ProtocolAdapter
    from provider_checks.client_cache import ClientCache


_ADAPTERS: dict[str, type[ProtocolAdapter]] = {}


def register_adapter(provider_type: str) -> Callable[[type[ProtocolAdapter]], type[ProtocolAdapter]]:
    def _register(cls: type[ProtocolAdapter]) -> type[ProtocolAdapter]:
        key = provider_type.strip().lower()
        if key in _ADAPTERS and _ADAPTERS[key] is not cls:
            raise ValueError(f"Adapter already registered for provider type {key!r}")
        _ADAPTERS[key] = cls
        return cls

    return _register


def registered_types() -> list[str]:
    return sorted(_ADAPTERS)


def build_adapter(provider_type: str, clients: ClientCache) -> ProtocolAdapter:
    cls = _ADAPTERS.get(str(provider_type or "").strip().lower())
    if cls is None:
        raise ConfigurationError(f"unsupported provider type: {provider_type}")
    return cls(clients)
