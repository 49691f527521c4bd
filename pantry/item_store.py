"""
Item store using SQLite.

Stores notes, their optional long-form details, a full-text index and an
optional vector index in one database file:

- ``items``: one row per note; ``row_id`` addresses both indexes
- ``item_details``: at most one long-form body per note
- ``items_fts``: FTS5 external-content index kept in sync by triggers
- ``items_vec``: sqlite-vec ``vec0`` table, created once the embedding
  dimension is known
- ``meta``: key/value metadata (the embedding dimension)

The database is the recoverable source of truth; markdown shelves are a
projection of it.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Sequence, Union

import sqlite_vec

from .errors import ConflictError, DimensionMismatchError, NotFoundError, StoreError
from .types import Item, ItemDetail, ReindexRow, SearchResult, utc_now

logger = logging.getLogger(__name__)

EMBEDDING_DIM_KEY = "embedding_dim"

# sqlite-vec rejects larger k values
_MAX_KNN = 4096

_RESULT_COLUMNS = """
    m.id, m.title, m.what, m.why, m.impact, m.category, m.tags,
    m.project, m.source, m.file_path, m.created_at,
    EXISTS(SELECT 1 FROM item_details d WHERE d.item_id = m.id) AS has_details
"""

_FTS_COLUMNS = "title, what, why, impact, tags, category, project, source"

_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS items (
    row_id INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    what TEXT NOT NULL,
    why TEXT,
    impact TEXT,
    tags TEXT NOT NULL DEFAULT '[]',
    category TEXT,
    project TEXT NOT NULL,
    source TEXT,
    related_files TEXT NOT NULL DEFAULT '[]',
    file_path TEXT NOT NULL,
    section_anchor TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    updated_count INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_items_project ON items(project);
CREATE INDEX IF NOT EXISTS idx_items_source ON items(source);
CREATE INDEX IF NOT EXISTS idx_items_created ON items(created_at);

CREATE TABLE IF NOT EXISTS item_details (
    item_id TEXT PRIMARY KEY REFERENCES items(id) ON DELETE CASCADE,
    body TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE VIRTUAL TABLE IF NOT EXISTS items_fts USING fts5(
    {_FTS_COLUMNS},
    content='items', content_rowid='row_id',
    tokenize='porter unicode61'
);

CREATE TRIGGER IF NOT EXISTS items_ai AFTER INSERT ON items BEGIN
    INSERT INTO items_fts(rowid, {_FTS_COLUMNS})
    VALUES (new.row_id, new.title, new.what, new.why, new.impact, new.tags,
            new.category, new.project, new.source);
END;

CREATE TRIGGER IF NOT EXISTS items_ad AFTER DELETE ON items BEGIN
    INSERT INTO items_fts(items_fts, rowid, {_FTS_COLUMNS})
    VALUES ('delete', old.row_id, old.title, old.what, old.why, old.impact, old.tags,
            old.category, old.project, old.source);
END;

CREATE TRIGGER IF NOT EXISTS items_au AFTER UPDATE ON items BEGIN
    INSERT INTO items_fts(items_fts, rowid, {_FTS_COLUMNS})
    VALUES ('delete', old.row_id, old.title, old.what, old.why, old.impact, old.tags,
            old.category, old.project, old.source);
    INSERT INTO items_fts(rowid, {_FTS_COLUMNS})
    VALUES (new.row_id, new.title, new.what, new.why, new.impact, new.tags,
            new.category, new.project, new.source);
END;
"""


def build_fts_query(query: str) -> str:
    """
    Turn free text into an FTS5 prefix disjunction.

    Each whitespace-separated token becomes a quoted prefix term, so
    FTS5 operators in user text are matched literally. Tokens without
    any letter or digit are dropped. Returns "" when nothing is left.
    """
    terms = []
    for token in query.split():
        if not any(ch.isalnum() for ch in token):
            continue
        terms.append('"' + token.replace('"', '""') + '"*')
    return " OR ".join(terms)


def _filters(project: Optional[str], source: Optional[str]) -> tuple[str, list]:
    """SQL fragment (starting with AND) and params for equality filters."""
    clause = ""
    params: list = []
    if project is not None:
        clause += " AND m.project = ?"
        params.append(project)
    if source is not None:
        clause += " AND m.source = ?"
        params.append(source)
    return clause, params


def _parse_json_list(text: Optional[str], item_id: str, column: str) -> list[str]:
    """Decode a JSON string array; malformed values become an empty list."""
    if not text:
        return []
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        logger.debug("Malformed %s JSON for %s, treating as empty", column, item_id)
        return []
    if not isinstance(value, list):
        logger.debug("Non-list %s JSON for %s, treating as empty", column, item_id)
        return []
    return [str(v) for v in value]


class ItemStore:
    """
    SQLite-backed implementation of StoreProtocol.

    Every write runs in a single transaction: it either fully applies
    or leaves the database unchanged.
    """

    def __init__(self, db_path: Union[Path, str]):
        """
        Args:
            db_path: Path to SQLite database file (":memory:" for tests)
        """
        self._db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._vec_loaded = False
        self._init_db()

    def _init_db(self) -> None:
        """Open the database, load sqlite-vec and create the schema."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA busy_timeout = 5000")
        except sqlite3.Error as e:
            raise StoreError(f"Failed to open {self._db_path}: {e}") from e

        self._vec_loaded = self._load_vec_extension()

        try:
            self._conn.executescript(_SCHEMA)
            dim = self.embedding_dim()
            if dim is not None and self._vec_loaded:
                self._create_vec_table(dim)
                self._conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to initialize schema in {self._db_path}: {e}") from e

    def _load_vec_extension(self) -> bool:
        try:
            self._conn.enable_load_extension(True)
            sqlite_vec.load(self._conn)
            self._conn.enable_load_extension(False)
        except (AttributeError, sqlite3.OperationalError) as e:
            # AttributeError: interpreter built without extension loading
            logger.warning("sqlite-vec unavailable, vector search disabled: %s", e)
            return False
        return True

    @contextmanager
    def _write(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Run a block as one transaction, mapping driver errors to StoreError."""
        try:
            with self._conn:
                yield self._conn
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"{operation}: {e}") from e
        except sqlite3.Error as e:
            raise StoreError(f"{operation}: {e}") from e

    def _read(self, sql: str, params: Sequence = ()) -> list[sqlite3.Row]:
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"query failed: {e}") from e

    def _read_one(self, sql: str, params: Sequence = ()) -> Optional[sqlite3.Row]:
        rows = self._read(sql, params)
        return rows[0] if rows else None

    def _resolve_id(self, id_or_prefix: str) -> Optional[str]:
        """Exact id first, then the oldest item whose id starts with the prefix."""
        if not id_or_prefix:
            return None
        row = self._read_one("SELECT id FROM items WHERE id = ?", (id_or_prefix,))
        if row is None:
            row = self._read_one(
                "SELECT id FROM items WHERE substr(id, 1, ?) = ? ORDER BY row_id LIMIT 1",
                (len(id_or_prefix), id_or_prefix),
            )
        return row["id"] if row else None

    # -------------------------------------------------------------------------
    # Row conversion
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_result(row: sqlite3.Row, score: float = 0.0) -> SearchResult:
        return SearchResult(
            id=row["id"],
            title=row["title"],
            what=row["what"],
            why=row["why"],
            impact=row["impact"],
            category=row["category"],
            tags=tuple(_parse_json_list(row["tags"], row["id"], "tags")),
            project=row["project"],
            source=row["source"],
            file_path=row["file_path"],
            created_at=row["created_at"],
            score=score,
            has_details=bool(row["has_details"]),
        )

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> Item:
        return Item(
            id=row["id"],
            title=row["title"],
            what=row["what"],
            why=row["why"],
            impact=row["impact"],
            category=row["category"],
            tags=_parse_json_list(row["tags"], row["id"], "tags"),
            project=row["project"],
            source=row["source"],
            related_files=_parse_json_list(row["related_files"], row["id"], "related_files"),
            file_path=row["file_path"],
            section_anchor=row["section_anchor"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            updated_count=row["updated_count"],
        )

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def insert_item(self, item: Item, details: Optional[str] = None) -> int:
        """
        Insert an item and, when given, its details row.

        Returns:
            The row id addressing the item in the vector index

        Raises:
            ConflictError: If an item with the same id exists
        """
        with self._write(f"insert item {item.id}") as conn:
            cursor = conn.execute("""
                INSERT INTO items
                (id, title, what, why, impact, tags, category, project, source,
                 related_files, file_path, section_anchor, created_at, updated_at, updated_count)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                item.id, item.title, item.what, item.why, item.impact,
                json.dumps(item.tags, ensure_ascii=False),
                item.category, item.project, item.source,
                json.dumps(item.related_files, ensure_ascii=False),
                item.file_path, item.section_anchor,
                item.created_at, item.updated_at, item.updated_count,
            ))
            row_id = cursor.lastrowid
            if details is not None:
                conn.execute(
                    "INSERT INTO item_details (item_id, body) VALUES (?, ?)",
                    (item.id, details),
                )
        return row_id

    def insert_vector(self, row_id: int, embedding: Sequence[float]) -> None:
        """
        Attach an embedding to an item row.

        No-op when the vector index does not exist yet.

        Raises:
            DimensionMismatchError: If the length differs from the index dimension
        """
        if not self.has_vec_table():
            return
        dim = self.embedding_dim()
        if dim is not None and len(embedding) != dim:
            raise DimensionMismatchError(dim, len(embedding))
        with self._write(f"insert vector for row {row_id}") as conn:
            conn.execute(
                "INSERT INTO items_vec (rowid, embedding) VALUES (?, ?)",
                (row_id, sqlite_vec.serialize_float32(list(embedding))),
            )

    def update_item(
        self,
        id_or_prefix: str,
        *,
        what: Optional[str] = None,
        why: Optional[str] = None,
        impact: Optional[str] = None,
        tags: Optional[list[str]] = None,
        details_append: Optional[str] = None,
    ) -> None:
        """
        Update fields of an existing item.

        Increments updated_count and sets updated_at. Only non-None fields
        are replaced. ``details_append`` is appended to the details body
        after a blank line, or becomes the body if there is none.

        Raises:
            NotFoundError: If no item matches
        """
        item_id = self._resolve_id(id_or_prefix)
        if item_id is None:
            raise NotFoundError(f"item not found: {id_or_prefix}")

        sets = ["updated_count = updated_count + 1", "updated_at = ?"]
        params: list = [utc_now()]
        for column, value in (("what", what), ("why", why), ("impact", impact)):
            if value is not None:
                sets.append(f"{column} = ?")
                params.append(value)
        if tags is not None:
            sets.append("tags = ?")
            params.append(json.dumps(tags, ensure_ascii=False))
        params.append(item_id)

        with self._write(f"update item {item_id}") as conn:
            conn.execute(f"UPDATE items SET {', '.join(sets)} WHERE id = ?", params)
            if details_append is not None:
                row = conn.execute(
                    "SELECT body FROM item_details WHERE item_id = ?", (item_id,)
                ).fetchone()
                if row is None:
                    conn.execute(
                        "INSERT INTO item_details (item_id, body) VALUES (?, ?)",
                        (item_id, details_append),
                    )
                else:
                    conn.execute(
                        "UPDATE item_details SET body = ? WHERE item_id = ?",
                        (row["body"] + "\n\n" + details_append, item_id),
                    )

    def delete_item(self, id_or_prefix: str) -> bool:
        """
        Delete an item, its details and its vector.

        Returns:
            True if an item was deleted, False if nothing matched
        """
        item_id = self._resolve_id(id_or_prefix)
        if item_id is None:
            return False
        has_vec = self.has_vec_table()
        with self._write(f"delete item {item_id}") as conn:
            row = conn.execute("SELECT row_id FROM items WHERE id = ?", (item_id,)).fetchone()
            conn.execute("DELETE FROM item_details WHERE item_id = ?", (item_id,))
            if has_vec and row is not None:
                conn.execute("DELETE FROM items_vec WHERE rowid = ?", (row["row_id"],))
            cursor = conn.execute("DELETE FROM items WHERE id = ?", (item_id,))
        return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get_item(self, id: str) -> tuple[Optional[Item], bool]:
        """Exact-id lookup. Returns (None, False) when absent."""
        row = self._read_one("""
            SELECT m.*,
                   EXISTS(SELECT 1 FROM item_details d WHERE d.item_id = m.id) AS has_details
            FROM items m WHERE m.id = ?
        """, (id,))
        if row is None:
            return None, False
        return self._row_to_item(row), bool(row["has_details"])

    def get_details(self, id_or_prefix: str) -> Optional[ItemDetail]:
        item_id = self._resolve_id(id_or_prefix)
        if item_id is None:
            return None
        row = self._read_one("SELECT item_id, body FROM item_details WHERE item_id = ?", (item_id,))
        if row is None:
            return None
        return ItemDetail(item_id=row["item_id"], body=row["body"])

    def fts_search(
        self,
        query: str,
        limit: int,
        project: Optional[str] = None,
        source: Optional[str] = None,
    ) -> list[SearchResult]:
        """
        Full-text search; any token prefix matches.

        Scores are the negated FTS5 rank, so higher is better.
        """
        fts_query = build_fts_query(query)
        if not fts_query or limit <= 0:
            return []
        clause, params = _filters(project, source)
        rows = self._read(f"""
            SELECT {_RESULT_COLUMNS}, -fts.rank AS score
            FROM items_fts fts
            JOIN items m ON m.row_id = fts.rowid
            WHERE fts.items_fts MATCH ?{clause}
            ORDER BY fts.rank
            LIMIT ?
        """, [fts_query, *params, limit])
        return [self._row_to_result(row, row["score"]) for row in rows]

    def vector_search(
        self,
        embedding: Sequence[float],
        limit: int,
        project: Optional[str] = None,
        source: Optional[str] = None,
    ) -> list[SearchResult]:
        """
        Nearest neighbours by cosine distance; score is ``1 - distance``.

        Filters apply after the neighbour search, so fewer than ``limit``
        results may come back. Returns [] when there is no vector index.
        """
        if limit <= 0 or not self.has_vec_table():
            return []
        dim = self.embedding_dim()
        if dim is not None and len(embedding) != dim:
            raise DimensionMismatchError(dim, len(embedding))
        clause, params = _filters(project, source)
        rows = self._read(f"""
            WITH knn AS (
                SELECT rowid, distance FROM items_vec
                WHERE embedding MATCH ? AND k = ?
            )
            SELECT {_RESULT_COLUMNS}, knn.distance AS distance
            FROM knn
            JOIN items m ON m.row_id = knn.rowid
            WHERE 1 = 1{clause}
            ORDER BY knn.distance
        """, [sqlite_vec.serialize_float32(list(embedding)), min(limit, _MAX_KNN), *params])
        return [self._row_to_result(row, 1.0 - row["distance"]) for row in rows]

    def list_recent(
        self,
        limit: int,
        project: Optional[str] = None,
        source: Optional[str] = None,
    ) -> list[SearchResult]:
        """Newest first; ties broken by insertion order, newest first."""
        clause, params = _filters(project, source)
        rows = self._read(f"""
            SELECT {_RESULT_COLUMNS}
            FROM items m
            WHERE 1 = 1{clause}
            ORDER BY m.created_at DESC, m.row_id DESC
            LIMIT ?
        """, [*params, limit])
        return [self._row_to_result(row) for row in rows]

    def list_all_for_reindex(self) -> list[ReindexRow]:
        rows = self._read(
            "SELECT row_id, id, title, what, why, impact, tags FROM items ORDER BY row_id"
        )
        return [
            ReindexRow(
                row_id=row["row_id"],
                title=row["title"],
                what=row["what"],
                why=row["why"],
                impact=row["impact"],
                tags=tuple(_parse_json_list(row["tags"], row["id"], "tags")),
            )
            for row in rows
        ]

    def count_items(self, project: Optional[str] = None, source: Optional[str] = None) -> int:
        clause, params = _filters(project, source)
        row = self._read_one(f"SELECT COUNT(*) AS n FROM items m WHERE 1 = 1{clause}", params)
        return row["n"]

    # -------------------------------------------------------------------------
    # Vector index management
    # -------------------------------------------------------------------------

    def has_vec_table(self) -> bool:
        if not self._vec_loaded:
            return False
        row = self._read_one(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'items_vec'"
        )
        return row is not None

    def embedding_dim(self) -> Optional[int]:
        """The recorded embedding dimension, or None if never set."""
        row = self._read_one("SELECT value FROM meta WHERE key = ?", (EMBEDDING_DIM_KEY,))
        if row is None:
            return None
        try:
            return int(row["value"])
        except ValueError:
            logger.warning("Ignoring malformed %s in meta: %r", EMBEDDING_DIM_KEY, row["value"])
            return None

    def set_embedding_dim(self, dim: int) -> None:
        """Record the dimension, independent of whether the index exists."""
        with self._write("set embedding dimension") as conn:
            conn.execute(
                "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
                (EMBEDDING_DIM_KEY, str(dim)),
            )

    def _create_vec_table(self, dim: int) -> None:
        self._conn.execute(f"""
            CREATE VIRTUAL TABLE IF NOT EXISTS items_vec USING vec0(
                embedding float[{int(dim)}] distance_metric=cosine
            )
        """)

    def ensure_vec_table(self, dim: int) -> None:
        """
        Create the vector index for ``dim`` if it does not exist.

        Raises:
            DimensionMismatchError: If a different dimension is recorded;
                the existing index is left untouched
            StoreError: If the sqlite-vec extension is not available
        """
        if not self._vec_loaded:
            raise StoreError("vector index unavailable: sqlite-vec extension not loaded")
        stored = self.embedding_dim()
        if stored is not None and stored != dim:
            raise DimensionMismatchError(stored, dim)
        with self._write(f"create vector index (dim={dim})") as conn:
            if stored is None:
                conn.execute(
                    "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
                    (EMBEDDING_DIM_KEY, str(dim)),
                )
            self._create_vec_table(dim)

    def drop_vec_table(self) -> None:
        if not self._vec_loaded:
            return
        with self._write("drop vector index") as conn:
            conn.execute("DROP TABLE IF EXISTS items_vec")

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
