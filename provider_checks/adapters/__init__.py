"""Protocol adapters: one per provider family, selected by provider type."""

from provider_checks.adapters.base import ProtocolAdapter
from provider_checks.adapters.registry import build_adapter, register_adapter, registered_types

# Imported for their registration side effect.
from provider_checks.adapters import anthropic, gemini_native, openai_compat  # noqa: E402,F401

__all__ = ["ProtocolAdapter", "build_adapter", "register_adapter", "registered_types"]
