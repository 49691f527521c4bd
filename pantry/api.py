"""
Core API for pantry.

This is the minimal working implementation focused on:
- store(): redact, dedup against the project, write shelf + index + vector
- search(): keyword search, with vectors only when keyword hits are sparse
- get_context(): items to inject at session start
- reindex(): rebuild the vector index with the current provider
"""

import logging
import os
import threading
from dataclasses import replace
from pathlib import Path
from typing import Callable, Optional

from .config import SEMANTIC_MODES, PantryConfig, get_pantry_home, load_config
from .errors import PantryError, ProviderError, StoreError, ValidationError
from .item_store import ItemStore
from .logging_config import configure_ops_log, remove_ops_log
from .protocol import StoreProtocol
from .providers.base import EmbeddingProvider, create_embedding_provider
from .redaction import Redactor
from .search import DEFAULT_MIN_FTS_RESULTS, normalize_scores, tiered_search
from .shelves import restore, shelf_path, snapshot, write_item
from .types import (
    ContextResult,
    Item,
    ItemDetail,
    RawItemInput,
    ReindexResult,
    SearchResult,
    StoreResult,
    merge_tags,
    today,
    validate_raw,
)

logger = logging.getLogger(__name__)

# Minimum project-normalized keyword score for a same-title item to be
# treated as the same note.
DEDUP_SCORE_THRESHOLD = 0.7
DEDUP_CANDIDATES = 5

DIMENSION_PROBE = "dimension probe"

ProgressCallback = Callable[[int, int], None]


def resolve_project(project: Optional[str]) -> str:
    """
    Validate a project name, defaulting to the current directory name.

    Project names become shelf directory names and shelf header values,
    so path separators, line breaks and '.'/'..' are rejected.
    """
    if project is None or not project.strip():
        try:
            project = Path.cwd().name
        except OSError:
            project = ""
        project = project or "unknown"
    project = project.strip()
    if (project in (".", "..") or "/" in project or "\\" in project or os.sep in project
            or "\n" in project or "\r" in project):
        raise ValidationError("project", f"{project!r} is not a valid project name")
    return project


class Pantry:
    """
    Note store for coding agents.

    Notes land in three places: a markdown shelf per project and day,
    the SQLite index (source of truth), and optionally a vector index.
    """

    def __init__(
        self,
        home: Optional[Path] = None,
        *,
        config: Optional[PantryConfig] = None,
        store: Optional[StoreProtocol] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
    ) -> None:
        """
        Open (or create) a pantry home.

        Args:
            home: Home directory. Defaults to $PANTRY_HOME or ~/.pantry.
            config: Pre-loaded configuration (skips reading config.toml).
            store: Injected store (skips opening the SQLite database).
            embedding_provider: Injected provider (skips the configured one).

        Raises:
            ConfigError: If the configuration is invalid
        """
        if config is None:
            config = load_config(Path(home) if home is not None else get_pantry_home())
        config.validate()
        self._config = config
        self._home = config.path

        self._home.mkdir(parents=True, exist_ok=True)
        config.shelves_dir.mkdir(parents=True, exist_ok=True)

        self._ops_log_handler = configure_ops_log(self._home)

        self._store: StoreProtocol = store if store is not None else ItemStore(config.db_path)
        self._redactor = Redactor.from_ignore_file(config.ignore_path)

        # Lazy, exactly-once initialization; see _get_embedding_provider()
        self._init_lock = threading.Lock()
        self._embedding_provider = embedding_provider
        self._provider_ready = embedding_provider is not None
        self._provider_error: Optional[Exception] = None
        self._vectors_available: Optional[bool] = None

    @property
    def config(self) -> PantryConfig:
        return self._config

    @property
    def home(self) -> Path:
        return self._home

    # -------------------------------------------------------------------------
    # Lazy initialization
    # -------------------------------------------------------------------------

    def _get_embedding_provider(self) -> Optional[EmbeddingProvider]:
        """
        Get the embedding provider, creating it on first use.

        Returns None when no provider is configured or creation failed;
        the failure is cached so it is logged once, not per call.
        """
        if self._provider_ready:
            return self._embedding_provider

        with self._init_lock:
            # Double-check after acquiring lock (another thread may have created it)
            if not self._provider_ready:
                try:
                    self._embedding_provider = create_embedding_provider(self._config.embedding)
                except Exception as e:
                    self._provider_error = e
                    logger.warning("Embedding provider unavailable, keyword search only: %s", e)
                self._provider_ready = True
        return self._embedding_provider

    def vectors_available(self) -> bool:
        """Whether a vector index exists (checked once, then cached)."""
        if self._vectors_available is not None:
            return self._vectors_available
        with self._init_lock:
            if self._vectors_available is None:
                self._vectors_available = self._store.has_vec_table()
        return self._vectors_available

    # -------------------------------------------------------------------------
    # Write operations
    # -------------------------------------------------------------------------

    def _redact(self, raw: RawItemInput) -> RawItemInput:
        r = self._redactor
        return replace(
            raw,
            title=r.redact(raw.title),
            what=r.redact(raw.what),
            why=r.redact_optional(raw.why),
            impact=r.redact_optional(raw.impact),
            details=r.redact_optional(raw.details),
        )

    def _find_duplicate(self, raw: RawItemInput, project: str) -> Optional[SearchResult]:
        """
        Best-effort lookup of an existing note this input should update.

        A candidate must share the title (case-insensitive, trimmed) and
        score at least DEDUP_SCORE_THRESHOLD relative to the best match
        across all projects. Any search failure means "no duplicate".
        """
        probe = f"{raw.title} {raw.what}"
        try:
            candidates = self._store.fts_search(probe, DEDUP_CANDIDATES, project, None)
            if not candidates:
                return None
            broad = self._store.fts_search(probe, DEDUP_CANDIDATES, None, None)
        except PantryError as e:
            logger.warning("Dedup probe failed, storing as new: %s", e)
            return None

        max_score = max((r.score for r in broad), default=0.0)
        top = candidates[0]
        normalized = top.score / max_score if max_score > 0 else 0.0
        title_match = raw.title.strip().casefold() == top.title.strip().casefold()
        logger.debug("Dedup candidate %s: score=%.3f title_match=%s", top.id, normalized, title_match)
        if normalized >= DEDUP_SCORE_THRESHOLD and title_match:
            return top
        return None

    def _update_existing(self, existing: SearchResult, raw: RawItemInput) -> StoreResult:
        details_append = None
        if raw.details is not None:
            details_append = f"--- updated {today()} ---\n{raw.details}"
        self._store.update_item(
            existing.id,
            what=raw.what,
            why=raw.why,
            impact=raw.impact,
            tags=merge_tags(list(existing.tags), raw.tags),
            details_append=details_append,
        )
        logger.info("Updated %s: %s", existing.id, raw.title)
        return StoreResult(id=existing.id, file_path=existing.file_path, action="updated")

    def _try_embed_and_attach(self, row_id: int, item: Item) -> bool:
        """
        Embed an item and store its vector; failures are logged, not raised.

        The item is already persisted, so a missing vector only means it
        is found by keyword search alone until the next reindex.
        """
        provider = self._get_embedding_provider()
        if provider is None:
            return False
        try:
            embedding = provider.embed(item.embedding_text())
            self._store.ensure_vec_table(len(embedding))
            self._store.insert_vector(row_id, embedding)
        except Exception as e:
            logger.warning("Stored %s without a vector: %s", item.id, e)
            return False
        self._vectors_available = True
        return True

    def _create(self, raw: RawItemInput, project: str) -> StoreResult:
        date_key = today()
        project_dir = self._config.shelves_dir / project
        path = shelf_path(project_dir, date_key)
        item = Item.from_raw(raw, project, str(path))

        previous = snapshot(path)
        try:
            write_item(project_dir, item, date_key, raw.details)
        except OSError as e:
            raise StoreError(f"failed to write shelf {path}: {e}") from e

        try:
            row_id = self._store.insert_item(item, raw.details)
        except Exception:
            try:
                restore(path, previous)
            except OSError as e:
                logger.error("Failed to roll back shelf %s: %s", path, e)
            raise

        self._try_embed_and_attach(row_id, item)
        logger.info("Stored %s in %s: %s", item.id, project, item.title)
        return StoreResult(id=item.id, file_path=str(path), action="created")

    def store(self, raw: RawItemInput, project: Optional[str] = None) -> StoreResult:
        """
        Store a note, or update a near-duplicate in the same project.

        All free text is redacted before anything is written.

        Args:
            raw: Note content
            project: Project name; defaults to the current directory name

        Returns:
            StoreResult with action "created" or "updated"

        Raises:
            ValidationError: If required fields are missing or invalid
            StoreError: If the shelf or the index cannot be written
        """
        validate_raw(raw)
        project = resolve_project(project)
        raw = self._redact(raw)

        existing = self._find_duplicate(raw, project)
        if existing is not None:
            return self._update_existing(existing, raw)
        return self._create(raw, project)

    def remove(self, id_or_prefix: str) -> bool:
        """Delete a note from the index. Returns False if nothing matched."""
        deleted = self._store.delete_item(id_or_prefix)
        if deleted:
            logger.info("Removed %s", id_or_prefix)
        return deleted

    # -------------------------------------------------------------------------
    # Read operations
    # -------------------------------------------------------------------------

    def search(
        self,
        query: str,
        limit: int = 5,
        project: Optional[str] = None,
        source: Optional[str] = None,
        use_vectors: bool = True,
    ) -> list[SearchResult]:
        """
        Search notes; scores are normalized so higher is better.

        Keyword-only when there is no provider, vectors are disabled, or no
        vector index exists yet. Otherwise tiered search.
        """
        provider = self._get_embedding_provider()
        if provider is None or not use_vectors or not self.vectors_available():
            return normalize_scores(self._store.fts_search(query, limit, project, source))
        return tiered_search(
            self._store, provider, query, limit, DEFAULT_MIN_FTS_RESULTS, project, source,
        )

    def _topup_recent(
        self,
        results: list[SearchResult],
        limit: int,
        project: Optional[str],
        source: Optional[str],
    ) -> list[SearchResult]:
        try:
            recent = self._store.list_recent(limit, project, source)
        except PantryError as e:
            logger.warning("Recent top-up failed: %s", e)
            return results
        seen = {r.id for r in results}
        topped = list(results)
        for r in recent:
            if len(topped) >= limit:
                break
            if r.id not in seen:
                topped.append(r)
                seen.add(r.id)
        return topped

    def get_context(
        self,
        limit: int = 10,
        project: Optional[str] = None,
        source: Optional[str] = None,
        query: Optional[str] = None,
        semantic: Optional[str] = None,
        topup_recent: Optional[bool] = None,
    ) -> ContextResult:
        """
        Select notes to inject into an agent session.

        Without a query, the most recent notes. With one, search results
        (vector use governed by ``semantic``), optionally backfilled with
        recent notes up to ``limit``. Defaults come from the [context]
        config section.
        """
        semantic = semantic or self._config.context.semantic
        if semantic not in SEMANTIC_MODES:
            raise ValidationError("semantic", f"must be one of {', '.join(SEMANTIC_MODES)}")
        if topup_recent is None:
            topup_recent = self._config.context.topup_recent

        total = self._store.count_items(project, source)

        if not query or not query.strip():
            return ContextResult(self._store.list_recent(limit, project, source), total)

        if semantic == "always":
            results = tiered_search(
                self._store, self._get_embedding_provider(), query, limit,
                DEFAULT_MIN_FTS_RESULTS, project, source,
            )
        else:
            results = self.search(query, limit, project, source, use_vectors=semantic == "auto")

        if topup_recent and len(results) < limit:
            results = self._topup_recent(results, limit, project, source)
        return ContextResult(results, total)

    def get_item(self, id: str) -> tuple[Optional[Item], bool]:
        """Exact-id lookup: (item, has_details), or (None, False)."""
        return self._store.get_item(id)

    def get_details(self, id_or_prefix: str) -> Optional[ItemDetail]:
        return self._store.get_details(id_or_prefix)

    def count(self, project: Optional[str] = None, source: Optional[str] = None) -> int:
        return self._store.count_items(project, source)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def check_embedding(self) -> tuple[EmbeddingProvider, int]:
        """
        Embed a fixed string to check the provider and learn its dimension.

        Returns:
            (provider, dimension)

        Raises:
            ProviderError: If no provider is available or the call fails
        """
        provider = self._get_embedding_provider()
        if provider is None:
            if self._provider_error is not None:
                raise ProviderError(
                    f"embedding provider unavailable: {self._provider_error}"
                ) from self._provider_error
            raise ProviderError("no embedding provider configured; set [embedding] provider")

        try:
            dim = len(provider.embed(DIMENSION_PROBE))
        except Exception as e:
            raise ProviderError(f"failed to probe embedding dimension: {e}") from e
        if dim == 0:
            raise ProviderError("embedding provider returned an empty vector")
        return provider, dim

    def reindex(self, progress: Optional[ProgressCallback] = None) -> ReindexResult:
        """
        Rebuild the vector index with the current embedding provider.

        This is the only operation that changes the index dimension.
        Items whose embedding fails are skipped; ``progress(current, total)``
        is called after each item that was embedded.

        Raises:
            ProviderError: If no provider is available or the probe fails
        """
        provider, dim = self.check_embedding()

        self._store.drop_vec_table()
        self._store.set_embedding_dim(dim)
        self._store.ensure_vec_table(dim)
        self._vectors_available = True

        rows = self._store.list_all_for_reindex()
        total = len(rows)
        embedded = 0
        logger.info("Reindex started: %d items, dim=%d", total, dim)
        for i, row in enumerate(rows):
            try:
                self._store.insert_vector(row.row_id, provider.embed(row.embedding_text()))
            except Exception as e:
                logger.warning("Reindex skipped row %d: %s", row.row_id, e)
                continue
            embedded += 1
            if progress is not None:
                progress(i + 1, total)

        model = getattr(provider, "model_name", None) or self._config.embedding.model
        logger.info("Reindex finished: %d/%d embedded, model=%s", embedded, total, model)
        return ReindexResult(count=total, embedded=embedded, dim=dim, model=model)

    def close(self) -> None:
        """Close the store and detach the operations log."""
        self._store.close()
        if self._ops_log_handler is not None:
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
