"""
src/songforge/providers/__init__.py

Provider clients for songforge.

  from songforge.providers import get_provider
  provider = get_provider("suno", session_store=store.session_store("suno", "main"))

Providers are selected by name (usually via --provider / SONGFORGE_PROVIDER).
"""

from __future__ import annotations

from songforge.errors import ProviderError
from songforge.providers.base import EngineProvider
from songforge.providers.registry import get_provider, list_providers

__all__ = [
    "EngineProvider",
    "ProviderError",
    "get_provider",
    "list_providers",
]
