"""
Protocol definitions for pantry storage.

StoreProtocol is the interface the search engine and the Pantry service
depend on. ItemStore (SQLite + sqlite-vec) implements it; tests use an
in-memory fake.
"""

from typing import Optional, Protocol, Sequence, runtime_checkable

from .types import Item, ItemDetail, ReindexRow, SearchResult


@runtime_checkable
class StoreProtocol(Protocol):
    """
    Relational store with a lexical index and an optional vector index.

    Operations taking ``id_or_prefix`` resolve an exact id first, then
    the oldest item whose id starts with the prefix.
    """

    # -- Write operations --

    def insert_item(self, item: Item, details: Optional[str] = None) -> int:
        """Insert an item (and optional details row). Returns the row id."""
        ...

    def insert_vector(self, row_id: int, embedding: Sequence[float]) -> None: ...

    def update_item(
        self,
        id_or_prefix: str,
        *,
        what: Optional[str] = None,
        why: Optional[str] = None,
        impact: Optional[str] = None,
        tags: Optional[list[str]] = None,
        details_append: Optional[str] = None,
    ) -> None: ...

    def delete_item(self, id_or_prefix: str) -> bool: ...

    # -- Read operations --

    def get_item(self, id: str) -> tuple[Optional[Item], bool]: ...

    def get_details(self, id_or_prefix: str) -> Optional[ItemDetail]: ...

    def fts_search(
        self,
        query: str,
        limit: int,
        project: Optional[str] = None,
        source: Optional[str] = None,
    ) -> list[SearchResult]: ...

    def vector_search(
        self,
        embedding: Sequence[float],
        limit: int,
        project: Optional[str] = None,
        source: Optional[str] = None,
    ) -> list[SearchResult]: ...

    def list_recent(
        self,
        limit: int,
        project: Optional[str] = None,
        source: Optional[str] = None,
    ) -> list[SearchResult]: ...

    def list_all_for_reindex(self) -> list[ReindexRow]: ...

    def count_items(self, project: Optional[str] = None, source: Optional[str] = None) -> int: ...

    # -- Vector index management --

    def has_vec_table(self) -> bool: ...

    def ensure_vec_table(self, dim: int) -> None: ...

    def set_embedding_dim(self, dim: int) -> None: ...

    def embedding_dim(self) -> Optional[int]: ...

    def drop_vec_table(self) -> None: ...

    def close(self) -> None: ...
