"""
Embedding providers for Ollama, OpenAI and OpenRouter.

Every call is bounded by a timeout, and every failure (transport, HTTP
status, malformed or empty response) is raised as ProviderError.
"""

import logging
from typing import Optional

import openai
import requests

from ..config import DEFAULT_OLLAMA_URL, DEFAULT_TIMEOUT
from ..errors import ConfigError, ProviderError
from .base import get_registry

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

# Connection attempts should fail fast; the read may wait on a cold model
_CONNECT_TIMEOUT = 5.0


def _as_vector(values, source: str) -> list[float]:
    if not values:
        raise ProviderError(f"{source} returned an empty embedding")
    try:
        return [float(v) for v in values]
    except (TypeError, ValueError) as e:
        raise ProviderError(f"{source} returned a non-numeric embedding: {e}") from e


class OllamaEmbedding:
    """
    Embedding provider using Ollama's local API.

    POSTs ``{"model", "prompt"}`` to ``{base_url}/api/embeddings``.
    """

    def __init__(
        self,
        model: str = "nomic-embed-text",
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.model = model
        self.base_url = (base_url or DEFAULT_OLLAMA_URL).rstrip("/")
        self.timeout = timeout
        self._session = requests.Session()
        if api_key:
            # Ollama itself has no auth, but reverse proxies in front of it may
            self._session.headers["Authorization"] = f"Bearer {api_key}"

    @property
    def model_name(self) -> str:
        return self.model

    def embed(self, text: str) -> list[float]:
        url = f"{self.base_url}/api/embeddings"
        try:
            response = self._session.post(
                url,
                json={"model": self.model, "prompt": text},
                timeout=(min(_CONNECT_TIMEOUT, self.timeout), self.timeout),
            )
        except requests.RequestException as e:
            raise ProviderError(
                f"Cannot reach Ollama at {self.base_url}. "
                f"Is Ollama running? Start it with: ollama serve ({e})"
            ) from e

        if not response.ok:
            detail = response.text[:200] if response.text else ""
            raise ProviderError(
                f"Ollama embedding failed (model={self.model}): "
                f"HTTP {response.status_code} from {self.base_url}. {detail}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"Ollama returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ProviderError("Ollama returned an unexpected response shape")
        return _as_vector(data.get("embedding"), f"Ollama ({self.model})")


class OpenAIEmbedding:
    """
    Embedding provider using the OpenAI embeddings API.

    Any OpenAI-compatible endpoint works through ``base_url``.
    """

    DEFAULT_BASE_URL = OPENAI_BASE_URL
    SERVICE = "OpenAI"

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        if not api_key:
            raise ConfigError(f"API key required for {self.SERVICE} embedding provider")
        self.model = model
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self._client = openai.OpenAI(
            api_key=api_key,
            base_url=self.base_url,
            timeout=timeout,
            max_retries=1,
        )

    @property
    def model_name(self) -> str:
        return self.model

    def embed(self, text: str) -> list[float]:
        try:
            response = self._client.embeddings.create(model=self.model, input=text)
        except openai.OpenAIError as e:
            raise ProviderError(f"{self.SERVICE} embedding failed (model={self.model}): {e}") from e

        if not response.data:
            raise ProviderError(f"{self.SERVICE} returned no embedding data")
        return _as_vector(response.data[0].embedding, f"{self.SERVICE} ({self.model})")


class OpenRouterEmbedding(OpenAIEmbedding):
    """OpenAI-compatible embeddings served by OpenRouter."""

    DEFAULT_BASE_URL = OPENROUTER_BASE_URL
    SERVICE = "OpenRouter"


# Register providers
_registry = get_registry()
_registry.register_embedding("ollama", OllamaEmbedding)
_registry.register_embedding("openai", OpenAIEmbedding)
_registry.register_embedding("openrouter", OpenRouterEmbedding)
