"""
Shared pytest fixtures for pantry tests.

Provides deterministic embedding providers and an in-memory store so the
service and search logic can be tested without a network or a database.
"""

import hashlib
import math
import re
import sqlite3
from typing import Optional, Sequence

import pytest
import sqlite_vec

from pantry.api import Pantry
from pantry.config import ContextConfig, EmbeddingConfig, PantryConfig
from pantry.errors import ConflictError, DimensionMismatchError, NotFoundError, ProviderError
from pantry.types import Item, ItemDetail, ReindexRow, SearchResult, utc_now


def _vec_extension_loads() -> bool:
    conn = sqlite3.connect(":memory:")
    try:
        conn.enable_load_extension(True)
        sqlite_vec.load(conn)
        return True
    except (AttributeError, sqlite3.OperationalError):
        return False
    finally:
        conn.close()


VEC_AVAILABLE = _vec_extension_loads()


class MockEmbeddingProvider:
    """
    Deterministic mock embedding provider for testing.

    Generates consistent embeddings based on text hash - no network calls.
    """

    model_name = "mock-model"

    def __init__(self, dimension: int = 16):
        self.dimension = dimension
        self.embed_calls = 0
        self.texts: list[str] = []

    def embed(self, text: str) -> list[float]:
        """Generate deterministic embedding from text hash."""
        self.embed_calls += 1
        self.texts.append(text)
        h = hashlib.md5(text.encode()).hexdigest()
        values = [(int(h[i:i + 2], 16) + 1) / 256.0 for i in range(0, 32, 2)]
        return (values * (self.dimension // len(values) + 1))[:self.dimension]


class FailingEmbeddingProvider:
    """Embedding provider whose every call fails."""

    model_name = "failing-model"

    def __init__(self):
        self.embed_calls = 0

    def embed(self, text: str) -> list[float]:
        self.embed_calls += 1
        raise ProviderError("connection refused")


_TOKEN_RE = re.compile(r"\w+")


def _tokens(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


def _cosine(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class FakeStore:
    """
    In-memory StoreProtocol implementation.

    Lexical score is the number of query tokens that prefix-match a token
    of the item; vector score is cosine similarity.
    """

    def __init__(self):
        self._rows: dict[int, Item] = {}
        self._details: dict[str, str] = {}
        self._vectors: dict[int, list[float]] = {}
        self._next_row = 1
        self._dim: Optional[int] = None
        self._vec_table = False
        self.closed = False

    def _row_of(self, item_id: str) -> Optional[int]:
        for row_id, item in self._rows.items():
            if item.id == item_id:
                return row_id
        return None

    def _resolve(self, id_or_prefix: str) -> Optional[str]:
        if not id_or_prefix:
            return None
        if self._row_of(id_or_prefix) is not None:
            return id_or_prefix
        for row_id in sorted(self._rows):
            if self._rows[row_id].id.startswith(id_or_prefix):
                return self._rows[row_id].id
        return None

    def _result(self, item: Item, score: float = 0.0) -> SearchResult:
        return SearchResult(
            id=item.id, title=item.title, what=item.what, why=item.why,
            impact=item.impact, category=item.category, tags=tuple(item.tags),
            project=item.project, source=item.source, file_path=item.file_path,
            created_at=item.created_at, score=score,
            has_details=item.id in self._details,
        )

    def _matches(self, item: Item, project, source) -> bool:
        return ((project is None or item.project == project)
                and (source is None or item.source == source))

    def insert_item(self, item: Item, details: Optional[str] = None) -> int:
        if self._row_of(item.id) is not None:
            raise ConflictError(f"duplicate id {item.id}")
        row_id = self._next_row
        self._next_row += 1
        self._rows[row_id] = item
        if details is not None:
            self._details[item.id] = details
        return row_id

    def insert_vector(self, row_id: int, embedding: Sequence[float]) -> None:
        if not self._vec_table:
            return
        if self._dim is not None and len(embedding) != self._dim:
            raise DimensionMismatchError(self._dim, len(embedding))
        self._vectors[row_id] = list(embedding)

    def update_item(self, id_or_prefix, *, what=None, why=None, impact=None,
                    tags=None, details_append=None) -> None:
        item_id = self._resolve(id_or_prefix)
        if item_id is None:
            raise NotFoundError(f"item not found: {id_or_prefix}")
        item = self._rows[self._row_of(item_id)]
        item.updated_count += 1
        item.updated_at = utc_now()
        if what is not None:
            item.what = what
        if why is not None:
            item.why = why
        if impact is not None:
            item.impact = impact
        if tags is not None:
            item.tags = list(tags)
        if details_append is not None:
            if item_id in self._details:
                self._details[item_id] += "\n\n" + details_append
            else:
                self._details[item_id] = details_append

    def delete_item(self, id_or_prefix: str) -> bool:
        item_id = self._resolve(id_or_prefix)
        if item_id is None:
            return False
        row_id = self._row_of(item_id)
        self._details.pop(item_id, None)
        self._vectors.pop(row_id, None)
        del self._rows[row_id]
        return True

    def get_item(self, id: str):
        row_id = self._row_of(id)
        if row_id is None:
            return None, False
        return self._rows[row_id], id in self._details

    def get_details(self, id_or_prefix: str) -> Optional[ItemDetail]:
        item_id = self._resolve(id_or_prefix)
        if item_id is None or item_id not in self._details:
            return None
        return ItemDetail(item_id=item_id, body=self._details[item_id])

    def fts_search(self, query, limit, project=None, source=None) -> list[SearchResult]:
        terms = _tokens(query)
        if not terms or limit <= 0:
            return []
        hits = []
        for item in self._rows.values():
            if not self._matches(item, project, source):
                continue
            words = _tokens(" ".join([
                item.title, item.what, item.why or "", item.impact or "", " ".join(item.tags),
            ]))
            score = sum(1 for t in terms if any(w.startswith(t) for w in words))
            if score:
                hits.append(self._result(item, float(score)))
        hits.sort(key=lambda r: r.score, reverse=True)
        return hits[:limit]

    def vector_search(self, embedding, limit, project=None, source=None) -> list[SearchResult]:
        if limit <= 0 or not self._vec_table:
            return []
        if self._dim is not None and len(embedding) != self._dim:
            raise DimensionMismatchError(self._dim, len(embedding))
        scored = sorted(
            ((_cosine(embedding, vec), row_id) for row_id, vec in self._vectors.items()),
            reverse=True,
        )[:limit]
        return [
            self._result(self._rows[row_id], score)
            for score, row_id in scored
            if self._matches(self._rows[row_id], project, source)
        ]

    def list_recent(self, limit, project=None, source=None) -> list[SearchResult]:
        rows = sorted(self._rows.items(), key=lambda kv: (kv[1].created_at, kv[0]), reverse=True)
        return [self._result(item) for _, item in rows if self._matches(item, project, source)][:limit]

    def list_all_for_reindex(self) -> list[ReindexRow]:
        return [
            ReindexRow(row_id=row_id, title=item.title, what=item.what, why=item.why,
                       impact=item.impact, tags=tuple(item.tags))
            for row_id, item in sorted(self._rows.items())
        ]

    def count_items(self, project=None, source=None) -> int:
        return sum(1 for item in self._rows.values() if self._matches(item, project, source))

    def has_vec_table(self) -> bool:
        return self._vec_table

    def ensure_vec_table(self, dim: int) -> None:
        if self._dim is not None and self._dim != dim:
            raise DimensionMismatchError(self._dim, dim)
        self._dim = dim
        self._vec_table = True

    def set_embedding_dim(self, dim: int) -> None:
        self._dim = dim

    def embedding_dim(self) -> Optional[int]:
        return self._dim

    def drop_vec_table(self) -> None:
        self._vec_table = False
        self._vectors.clear()

    def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_embedding_provider():
    """Create a fresh MockEmbeddingProvider instance."""
    return MockEmbeddingProvider()


@pytest.fixture
def failing_embedding_provider():
    return FailingEmbeddingProvider()


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def keyword_config(tmp_path):
    """Configuration with no embedding provider (keyword-only)."""
    return PantryConfig(
        path=tmp_path / "home",
        embedding=EmbeddingConfig(provider=None),
        context=ContextConfig(),
    )


@pytest.fixture
def keyword_pantry(keyword_config):
    """Pantry on a real SQLite store in tmp_path, keyword-only."""
    p = Pantry(config=keyword_config)
    yield p
    p.close()


@pytest.fixture
def vector_pantry(tmp_path, mock_embedding_provider):
    """Pantry on a real SQLite store with the mock embedding provider."""
    config = PantryConfig(path=tmp_path / "home")
    p = Pantry(config=config, embedding_provider=mock_embedding_provider)
    yield p
    p.close()


@pytest.fixture
def fake_pantry(keyword_config, fake_store, mock_embedding_provider):
    """Pantry on the in-memory store with the mock embedding provider."""
    p = Pantry(config=keyword_config, store=fake_store, embedding_provider=mock_embedding_provider)
    yield p
    p.close()


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep the error log and default home out of the real home directory."""
    monkeypatch.setenv("PANTRY_HOME", str(tmp_path / "env-home"))
    for var in ("PANTRY_EMBEDDING_PROVIDER", "PANTRY_EMBEDDING_MODEL",
                "PANTRY_EMBEDDING_API_KEY", "PANTRY_EMBEDDING_BASE_URL",
                "PANTRY_CONTEXT_SEMANTIC", "PANTRY_VERBOSE"):
        monkeypatch.delenv(var, raising=False)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "vec: requires the sqlite-vec extension to load"
    )


def pytest_collection_modifyitems(config, items):
    if VEC_AVAILABLE:
        return
    skip = pytest.mark.skip(reason="sqlite-vec extension cannot be loaded")
    for item in items:
        if "vec" in item.keywords:
            item.add_marker(skip)
