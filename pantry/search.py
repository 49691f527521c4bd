"""
Hybrid search: lexical first, vectors only when lexical results are sparse.

Every embedding call is a network round trip, so ``tiered_search`` only
embeds the query when full-text search finds fewer than
``min_fts_results`` matches. Embedding or vector failures never reach the
caller; the lexical results are returned instead.
"""

import logging
from dataclasses import replace
from typing import Optional

from .protocol import StoreProtocol
from .providers.base import EmbeddingProvider
from .types import SearchResult

logger = logging.getLogger(__name__)

DEFAULT_FTS_WEIGHT = 0.3
DEFAULT_VEC_WEIGHT = 0.7
DEFAULT_MIN_FTS_RESULTS = 3


def normalize_scores(results: list[SearchResult]) -> list[SearchResult]:
    """Divide every score by the batch maximum (unchanged if empty or max <= 0)."""
    if not results:
        return []
    max_score = max(r.score for r in results)
    if max_score <= 0:
        return list(results)
    return [replace(r, score=r.score / max_score) for r in results]


def merge_results(
    fts_results: list[SearchResult],
    vec_results: list[SearchResult],
    fts_weight: float = DEFAULT_FTS_WEIGHT,
    vec_weight: float = DEFAULT_VEC_WEIGHT,
    limit: int = 10,
) -> list[SearchResult]:
    """
    Combine lexical and vector results into one ranking.

    Each list is normalized on its own, then weighted. An id present in
    both lists gets the sum of both contributions, so overlap outranks
    a hit in only one list.
    """
    merged: dict[str, SearchResult] = {}
    for r in normalize_scores(fts_results):
        merged[r.id] = replace(r, score=fts_weight * r.score)
    for r in normalize_scores(vec_results):
        existing = merged.get(r.id)
        if existing is not None:
            merged[r.id] = replace(existing, score=existing.score + vec_weight * r.score)
        else:
            merged[r.id] = replace(r, score=vec_weight * r.score)

    ranked = sorted(merged.values(), key=lambda r: r.score, reverse=True)
    return ranked[:limit]


def _vector_merge(
    store: StoreProtocol,
    provider: EmbeddingProvider,
    query: str,
    fts_results: list[SearchResult],
    limit: int,
    project: Optional[str],
    source: Optional[str],
) -> list[SearchResult]:
    """Embed the query and merge in vector hits; lexical results on any failure."""
    try:
        embedding = provider.embed(query)
    except Exception as e:
        logger.warning("Query embedding failed, using keyword results: %s", e)
        return fts_results[:limit]

    try:
        vec_results = store.vector_search(embedding, limit * 2, project, source)
    except Exception as e:
        logger.warning("Vector search failed, using keyword results: %s", e)
        return fts_results[:limit]

    return merge_results(fts_results, vec_results, DEFAULT_FTS_WEIGHT, DEFAULT_VEC_WEIGHT, limit)


def tiered_search(
    store: StoreProtocol,
    provider: Optional[EmbeddingProvider],
    query: str,
    limit: int,
    min_fts_results: int = DEFAULT_MIN_FTS_RESULTS,
    project: Optional[str] = None,
    source: Optional[str] = None,
) -> list[SearchResult]:
    """
    Search lexically, adding vector results only when lexical hits are sparse.

    Args:
        store: Item store
        provider: Embedding provider, or None for keyword-only
        query: Free text
        limit: Maximum results
        min_fts_results: Lexical hit count at which vectors are skipped
        project: Restrict to one project
        source: Restrict to one source

    Raises:
        StoreError: If the full-text query itself fails
    """
    fts_results = normalize_scores(store.fts_search(query, limit * 2, project, source))

    if len(fts_results) >= min_fts_results:
        return fts_results[:limit]

    if provider is None:
        return fts_results[:limit]

    return _vector_merge(store, provider, query, fts_results, limit, project, source)


def hybrid_search(
    store: StoreProtocol,
    provider: Optional[EmbeddingProvider],
    query: str,
    limit: int,
    project: Optional[str] = None,
    source: Optional[str] = None,
) -> list[SearchResult]:
    """Like tiered_search, but always consults vectors when a provider exists."""
    fts_results = normalize_scores(store.fts_search(query, limit * 2, project, source))
    if provider is None:
        return fts_results[:limit]
    return _vector_merge(store, provider, query, fts_results, limit, project, source)
