"""
Embedding providers.

Concrete providers register themselves with the global registry on import.
"""

from .base import EmbeddingProvider, ProviderRegistry, create_embedding_provider, get_registry

__all__ = [
    "EmbeddingProvider",
    "ProviderRegistry",
    "create_embedding_provider",
    "get_registry",
]
