"""
Provider adapters for contentgen.

One adapter per upstream AI service, plus the registry that holds them.
"""

from .base import ProviderAdapter
from .registry import ProviderCredentials, ProviderRegistry, build_registry

__all__ = ["ProviderAdapter", "ProviderCredentials", "ProviderRegistry", "build_registry"]
