"""
src/songforge/providers/registry.py

Provider lookup by name (usually from --provider or SONGFORGE_PROVIDER).
"""

from __future__ import annotations

import os
from typing import Any, List, Optional

from songforge.errors import ProviderError
from songforge.providers.base import EngineProvider


def list_providers() -> List[str]:
    # Keep stable ordering for CLI/help output
    return ["stub", "suno", "udio"]


def get_provider(name: Optional[str] = None, **kwargs: Any) -> EngineProvider:
    """
    Construct a provider. kwargs go to the provider constructor (shared
    collaborators plus provider specific options such as `captcha` for udio).
    """
    n = (name or os.environ.get("SONGFORGE_PROVIDER") or "stub").strip().lower()

    if n == "stub":
        from .stub import StubProvider

        cls: Any = StubProvider
    elif n == "suno":
        from .suno import SunoProvider

        cls = SunoProvider
    elif n == "udio":
        from .udio import UdioProvider

        cls = UdioProvider
    else:
        raise ProviderError(f"Unknown provider: {n}. Available: {', '.join(list_providers())}")

    try:
        return cls(**kwargs)
    except ProviderError:
        raise
    except TypeError as e:
        raise ProviderError(f"Failed to construct provider {n}: {e}") from e
