"""
Pantry

Persistent notes for coding agents: decisions, patterns, bugs fixed,
context and learnings, kept across sessions with keyword and semantic search.

Quick Start:
    from pantry import Pantry, RawItemInput

    with Pantry() as p:  # uses ~/.pantry/
        p.store(RawItemInput(title="Use Postgres", what="Switched from SQLite",
                             category="decision"), project="myproj")
        results = p.search("database")

CLI Usage:
    pantry store "Use Postgres" --what "Switched from SQLite" -c decision
    pantry search "database"
    pantry list --project myproj
    pantry mcp

Home Directory:
    ~/.pantry/ holding config.toml, index.db, shelves/ and .pantryignore.
    Override with PANTRY_HOME or an explicit path argument.

Environment Variables:
    PANTRY_HOME                 - Override the home directory
    PANTRY_EMBEDDING_PROVIDER   - ollama | openai | openrouter | none
    PANTRY_EMBEDDING_API_KEY    - API key for openai/openrouter
    PANTRY_VERBOSE              - Set to 1 for debug logging
"""

from .api import Pantry
from .errors import (
    ConfigError,
    ConflictError,
    DimensionMismatchError,
    NotFoundError,
    PantryError,
    ProviderError,
    StoreError,
    ValidationError,
)
from .types import (
    CATEGORIES,
    ContextResult,
    Item,
    ItemDetail,
    RawItemInput,
    ReindexResult,
    SearchResult,
    StoreResult,
)

__version__ = "0.1.0"
__all__ = [
    "Pantry",
    "RawItemInput",
    "Item",
    "ItemDetail",
    "SearchResult",
    "StoreResult",
    "ContextResult",
    "ReindexResult",
    "CATEGORIES",
    "PantryError",
    "NotFoundError",
    "DimensionMismatchError",
    "ProviderError",
    "ValidationError",
    "StoreError",
    "ConflictError",
    "ConfigError",
]
