"""
Base provider protocol and registry.

Using Protocol for structural subtyping - no explicit inheritance required.
"""

from typing import Optional, Protocol, runtime_checkable

from ..config import EmbeddingConfig
from ..errors import ConfigError


@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Generates vector embeddings from text.

    The same provider (and model) must be used for indexing and querying;
    a model change requires 'pantry reindex'.

    Example implementation:
        class HashEmbedding:
            model_name = "hash"

            def embed(self, text: str) -> list[float]:
                return [float(b) for b in hashlib.sha256(text.encode()).digest()]
    """

    @property
    def model_name(self) -> str:
        """Model identifier, reported by reindex."""
        ...

    def embed(self, text: str) -> list[float]:
        """
        Generate an embedding vector for the given text.

        Raises:
            ProviderError: On transport, HTTP or decoding failure
        """
        ...


class ProviderRegistry:
    """
    Registry for discovering and instantiating embedding providers.

    Providers are registered by name so the configuration file can select
    one without code changes.

    Example:
        registry = ProviderRegistry()
        registry.register_embedding("ollama", OllamaEmbedding)
        provider = registry.create_embedding("ollama", {"model": "nomic-embed-text"})
    """

    def __init__(self):
        self._embedding_providers: dict[str, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Import provider modules so they register themselves."""
        if self._lazy_loaded:
            return
        self._lazy_loaded = True
        from . import embeddings  # noqa: F401

    def register_embedding(self, name: str, provider_class: type) -> None:
        """Register an embedding provider class."""
        self._embedding_providers[name] = provider_class

    def create_embedding(self, name: str, params: Optional[dict] = None) -> EmbeddingProvider:
        """
        Create an embedding provider instance.

        Raises:
            ConfigError: If no provider is registered under ``name``
        """
        self._ensure_providers_loaded()
        if name not in self._embedding_providers:
            available = ", ".join(sorted(self._embedding_providers)) or "none"
            raise ConfigError(
                f"Unknown embedding provider: '{name}'. Available providers: {available}."
            )
        return self._embedding_providers[name](**(params or {}))

    def list_embedding_providers(self) -> list[str]:
        """List registered embedding provider names."""
        self._ensure_providers_loaded()
        return list(self._embedding_providers.keys())


# Global registry instance
# Concrete providers register themselves on import
_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry


def create_embedding_provider(config: EmbeddingConfig) -> Optional[EmbeddingProvider]:
    """
    Build the configured embedding provider.

    Returns None when no provider is configured (keyword-only mode).
    Unset optional parameters are left to the provider's defaults.
    """
    if config.provider is None:
        return None
    params: dict = {"model": config.model, "timeout": config.timeout}
    if config.base_url:
        params["base_url"] = config.base_url
    if config.api_key:
        params["api_key"] = config.api_key
    return get_registry().create_embedding(config.provider, params)
