"""
Data types for the pantry store.
"""

import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .errors import ValidationError


# Closed category set. Order defines shelf heading order.
CATEGORIES = ("decision", "pattern", "bug", "context", "learning")

CATEGORY_HEADINGS = {
    "decision": "Decisions",
    "pattern": "Patterns",
    "bug": "Bugs Fixed",
    "context": "Context",
    "learning": "Learnings",
}

_ANCHOR_RE = re.compile(r"[^a-z0-9]+")


def utc_now() -> str:
    """Current UTC timestamp in canonical format: YYYY-MM-DDTHH:MM:SSZ.

    All timestamps in pantry are UTC. This is the single source of truth
    for timestamp formatting.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def today() -> str:
    """Current UTC date (YYYY-MM-DD), used as the shelf file key."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def generate_anchor(title: str) -> str:
    """URL-friendly anchor for a title: lowercase, runs of non-alphanumerics become '-'."""
    return _ANCHOR_RE.sub("-", title.lower()).strip("-")


def embedding_text(
    title: str,
    what: str,
    why: Optional[str] = None,
    impact: Optional[str] = None,
    tags: "list[str] | tuple[str, ...]" = (),
) -> str:
    """Space-join the embedded fields, omitting empty optionals."""
    parts = [title, what, why or "", impact or "", " ".join(tags)]
    return " ".join(p for p in parts if p)


def merge_tags(existing: list[str], extra: list[str]) -> list[str]:
    """Union two tag lists, case-insensitively, keeping existing tags first."""
    merged = list(existing)
    seen = {t.casefold() for t in existing}
    for tag in extra:
        key = tag.casefold()
        if key not in seen:
            merged.append(tag)
            seen.add(key)
    return merged


@dataclass
class RawItemInput:
    """
    Caller input for a new note, before redaction and id generation.

    Attributes:
        title: Short descriptive title (required)
        what: What happened or was decided (required)
        why: Reasoning behind it
        impact: What changed as a result
        category: One of CATEGORIES
        source: Name of the agent or user that produced the note
        details: Long-form body, stored separately from the indexed fields
        tags: Free-form labels
        related_files: Informational file paths
    """
    title: str
    what: str
    why: Optional[str] = None
    impact: Optional[str] = None
    category: Optional[str] = None
    source: Optional[str] = None
    details: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    related_files: list[str] = field(default_factory=list)


def validate_raw(raw: RawItemInput) -> None:
    """Reject input that must never reach the store."""
    if not raw.title or not raw.title.strip():
        raise ValidationError("title", "must not be empty")
    if not raw.what or not raw.what.strip():
        raise ValidationError("what", "must not be empty")
    if raw.category is not None and raw.category not in CATEGORIES:
        raise ValidationError(
            "category",
            f"{raw.category!r} is not one of {', '.join(CATEGORIES)}",
        )


@dataclass
class Item:
    """
    A single persisted note.

    ``file_path`` and ``section_anchor`` locate the note's section in the
    markdown shelf; both are fixed at creation.
    """
    id: str
    title: str
    what: str
    project: str
    file_path: str
    created_at: str
    updated_at: str
    why: Optional[str] = None
    impact: Optional[str] = None
    category: Optional[str] = None
    source: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    related_files: list[str] = field(default_factory=list)
    section_anchor: str = ""
    updated_count: int = 0

    @classmethod
    def from_raw(cls, raw: RawItemInput, project: str, file_path: str) -> "Item":
        """Create a new Item with a fresh id and timestamps."""
        now = utc_now()
        return cls(
            id=str(uuid.uuid4()),
            title=raw.title,
            what=raw.what,
            why=raw.why,
            impact=raw.impact,
            category=raw.category,
            source=raw.source,
            tags=list(raw.tags),
            related_files=list(raw.related_files),
            project=project,
            file_path=file_path,
            section_anchor=generate_anchor(raw.title),
            created_at=now,
            updated_at=now,
        )

    def embedding_text(self) -> str:
        return embedding_text(self.title, self.what, self.why, self.impact, self.tags)


@dataclass(frozen=True)
class ItemDetail:
    """Long-form body attached 1:1 to an item."""
    item_id: str
    body: str


@dataclass(frozen=True)
class SearchResult:
    """
    A read-only search hit.

    ``score`` is specific to the query that produced it (higher is better)
    and is never persisted. Derive re-scored copies with dataclasses.replace.
    """
    id: str
    title: str
    what: str
    project: str
    file_path: str
    created_at: str
    score: float = 0.0
    has_details: bool = False
    why: Optional[str] = None
    impact: Optional[str] = None
    category: Optional[str] = None
    source: Optional[str] = None
    tags: tuple[str, ...] = ()

    @property
    def date(self) -> str:
        return self.created_at[:10]

    def to_dict(self) -> dict:
        d = asdict(self)
        d["tags"] = list(self.tags)
        return d

    def __str__(self) -> str:
        return f"{self.id[:8]} [{self.score:.3f}] {self.title}"


@dataclass(frozen=True)
class ReindexRow:
    """Fields needed to regenerate one item's embedding."""
    row_id: int
    title: str
    what: str
    why: Optional[str] = None
    impact: Optional[str] = None
    tags: tuple[str, ...] = ()

    def embedding_text(self) -> str:
        return embedding_text(self.title, self.what, self.why, self.impact, self.tags)


@dataclass(frozen=True)
class StoreResult:
    """Outcome of Pantry.store(): which item was written and how."""
    id: str
    file_path: str
    action: str  # "created" | "updated"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ContextResult:
    """Items selected for context injection plus the unfiltered total."""
    results: list[SearchResult]
    total: int


@dataclass(frozen=True)
class ReindexResult:
    count: int
    embedded: int
    dim: int
    model: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)
