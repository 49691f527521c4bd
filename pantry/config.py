"""
Configuration management for a pantry home directory.

The configuration is stored as a TOML file in the home directory.
It selects the embedding provider and how session context is retrieved.
Environment variables override file values, so host applications can
inject secrets without writing them to disk.
"""

import copy
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import tomli_w

from .errors import ConfigError


CONFIG_FILENAME = "config.toml"
DB_FILENAME = "index.db"
SHELVES_DIRNAME = "shelves"
IGNORE_FILENAME = ".pantryignore"

PROVIDERS = ("ollama", "openai", "openrouter")
SEMANTIC_MODES = ("auto", "always", "never")
KEYED_PROVIDERS = ("openai", "openrouter")
SETTABLE_KEYS = (
    "embedding.provider",
    "embedding.model",
    "embedding.base_url",
    "embedding.api_key",
    "embedding.timeout",
    "context.semantic",
    "context.topup_recent",
)

DEFAULT_PROVIDER = "ollama"
DEFAULT_MODEL = "nomic-embed-text"
DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_TIMEOUT = 30.0

DEFAULT_CONFIG_TEMPLATE = """\
# Pantry configuration

# Embedding provider for semantic search.
# Without one, keyword search (FTS5) still works. Use provider = "none"
# to run keyword-only.
[embedding]
provider = "ollama"               # ollama | openai | openrouter | none
model = "nomic-embed-text"
base_url = "http://localhost:11434"
# api_key = "sk-..."              # required for openai/openrouter
timeout = 30                      # seconds per embedding request

# How items are retrieved at session start.
# "auto" uses vectors when available, falls back to keywords.
[context]
semantic = "auto"                 # auto | always | never
topup_recent = true               # also include recent items
"""


@dataclass
class EmbeddingConfig:
    """Embedding provider selection. ``provider=None`` means keyword-only."""
    provider: Optional[str] = DEFAULT_PROVIDER
    model: str = DEFAULT_MODEL
    base_url: Optional[str] = None  # provider default when unset
    api_key: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT


@dataclass
class ContextConfig:
    """Session context retrieval settings."""
    semantic: str = "auto"
    topup_recent: bool = True


@dataclass
class PantryConfig:
    """Complete configuration for one pantry home."""
    path: Path
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    context: ContextConfig = field(default_factory=ContextConfig)

    @property
    def config_path(self) -> Path:
        return self.path / CONFIG_FILENAME

    @property
    def db_path(self) -> Path:
        return self.path / DB_FILENAME

    @property
    def shelves_dir(self) -> Path:
        return self.path / SHELVES_DIRNAME

    @property
    def ignore_path(self) -> Path:
        return self.path / IGNORE_FILENAME

    def exists(self) -> bool:
        return self.config_path.exists()

    def validate(self) -> None:
        """
        Check enumerated values and required credentials.

        Raises:
            ConfigError: On the first invalid value found
        """
        emb = self.embedding
        if emb.provider is not None:
            if emb.provider not in PROVIDERS:
                raise ConfigError(
                    f"invalid embedding.provider {emb.provider!r}: "
                    f"must be one of {', '.join(PROVIDERS)} or none"
                )
            if not emb.model:
                raise ConfigError("embedding.model must not be empty")
            if emb.provider in KEYED_PROVIDERS and not emb.api_key:
                raise ConfigError(f"embedding.api_key is required for provider {emb.provider!r}")
        if emb.timeout <= 0:
            raise ConfigError("embedding.timeout must be positive")
        if self.context.semantic not in SEMANTIC_MODES:
            raise ConfigError(
                f"invalid context.semantic {self.context.semantic!r}: "
                f"must be one of {', '.join(SEMANTIC_MODES)}"
            )


def get_pantry_home() -> Path:
    """Resolve the home directory: $PANTRY_HOME or ~/.pantry."""
    home = os.environ.get("PANTRY_HOME")
    if home:
        return Path(home).expanduser()
    return Path.home() / ".pantry"


def _parse_provider(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip().lower()
    if value in ("", "none"):
        return None
    return value


def _apply_env_overrides(config: PantryConfig) -> None:
    if v := os.environ.get("PANTRY_EMBEDDING_PROVIDER"):
        config.embedding.provider = _parse_provider(v)
    if v := os.environ.get("PANTRY_EMBEDDING_MODEL"):
        config.embedding.model = v
    if v := os.environ.get("PANTRY_EMBEDDING_API_KEY"):
        config.embedding.api_key = v
    if v := os.environ.get("PANTRY_EMBEDDING_BASE_URL"):
        config.embedding.base_url = v
    if v := os.environ.get("PANTRY_CONTEXT_SEMANTIC"):
        config.context.semantic = v


def load_config(home: Optional[Path] = None, apply_env: bool = True) -> PantryConfig:
    """
    Load configuration from a home directory.

    A missing file yields defaults. Environment overrides are applied
    last unless ``apply_env`` is False. Values are not validated here;
    call ``validate()``.

    Raises:
        ConfigError: If the file exists but is not valid TOML
    """
    home = Path(home) if home is not None else get_pantry_home()
    config = PantryConfig(path=home)

    if config.config_path.exists():
        try:
            with open(config.config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"failed to parse {config.config_path}: {e}") from e

        emb = data.get("embedding", {})
        if "provider" in emb:
            config.embedding.provider = _parse_provider(emb["provider"])
        config.embedding.model = emb.get("model") or DEFAULT_MODEL
        if "base_url" in emb:
            config.embedding.base_url = emb["base_url"] or None
        config.embedding.api_key = emb.get("api_key") or None
        if "timeout" in emb:
            try:
                config.embedding.timeout = float(emb["timeout"])
            except (TypeError, ValueError) as e:
                raise ConfigError(f"embedding.timeout must be a number: {emb['timeout']!r}") from e

        ctx = data.get("context", {})
        config.context.semantic = ctx.get("semantic") or "auto"
        config.context.topup_recent = bool(ctx.get("topup_recent", True))

    if apply_env:
        _apply_env_overrides(config)
    return config


def save_config(config: PantryConfig) -> None:
    """
    Save configuration to the home directory.

    Creates the directory if it doesn't exist. Unset optional values are
    omitted from the file.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    emb = config.embedding
    embedding: dict[str, Any] = {
        "provider": emb.provider or "none",
        "model": emb.model,
        "timeout": emb.timeout,
    }
    if emb.base_url:
        embedding["base_url"] = emb.base_url
    if emb.api_key:
        embedding["api_key"] = emb.api_key

    data = {
        "embedding": embedding,
        "context": {
            "semantic": config.context.semantic,
            "topup_recent": config.context.topup_recent,
        },
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def _parse_bool(key: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("true", "1", "yes", "on"):
        return True
    if lowered in ("false", "0", "no", "off"):
        return False
    raise ConfigError(f"{key} must be true or false, got {value!r}")


def _assign(config: PantryConfig, key: str, value: str) -> None:
    if key not in SETTABLE_KEYS:
        raise ConfigError(f"unknown config key {key!r}; settable keys: {', '.join(SETTABLE_KEYS)}")
    section, _, name = key.partition(".")
    if key == "embedding.provider":
        config.embedding.provider = _parse_provider(value)
    elif key == "embedding.timeout":
        try:
            config.embedding.timeout = float(value)
        except ValueError as e:
            raise ConfigError(f"embedding.timeout must be a number: {value!r}") from e
    elif key == "context.topup_recent":
        config.context.topup_recent = _parse_bool(key, value)
    elif key in ("embedding.base_url", "embedding.api_key"):
        setattr(config.embedding, name, value.strip() or None)
    else:
        setattr(getattr(config, section), name, value.strip())


def set_config_value(home: Optional[Path], key: str, value: str) -> PantryConfig:
    """
    Set one value in config.toml and save the file.

    Only file values are written; environment overrides are applied to
    a copy when validating, so a key supplied by the environment still
    satisfies the credential check without being saved.

    Raises:
        ConfigError: If the key is unknown or the result is invalid
    """
    config = load_config(home, apply_env=False)
    _assign(config, key, value)
    effective = copy.deepcopy(config)
    _apply_env_overrides(effective)
    effective.validate()
    save_config(config)
    return config


def init_home(home: Optional[Path] = None) -> tuple[PantryConfig, bool]:
    """
    Create the home directory layout and a commented default config.

    An existing config file is left untouched.

    Returns:
        The loaded configuration and whether a new config file was written
    """
    home = Path(home) if home is not None else get_pantry_home()
    config = PantryConfig(path=home)
    home.mkdir(parents=True, exist_ok=True)
    config.shelves_dir.mkdir(exist_ok=True)

    created = False
    if not config.exists():
        config.config_path.write_text(DEFAULT_CONFIG_TEMPLATE, encoding="utf-8")
        created = True
    return load_config(home), created
