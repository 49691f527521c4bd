"""
MCP stdio server for pantry: persistent notes for coding agents.

Exposes Pantry operations as MCP tools so an agent can record decisions,
bugs and learnings as it works and pull them back in later sessions.

Usage:
    pantry mcp                               # stdio server (via CLI)
    claude mcp add pantry -- pantry mcp      # agent integration

All Pantry calls are serialized through a single asyncio.Lock.
"""

import asyncio
import json
from typing import Annotated, Optional, Union

from mcp.server.fastmcp import FastMCP
from mcp.types import ToolAnnotations
from pydantic import Field

from .api import Pantry, resolve_project
from .errors import PantryError
from .params import parse_list_param
from .types import RawItemInput, SearchResult

# ---------------------------------------------------------------------------
# Server setup
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "pantry",
    instructions=(
        "Persistent notes for coding sessions. "
        "Store decisions, patterns, bugs fixed, context and learnings as you work. "
        "Search them, or load recent notes at the start of a session."
    ),
)

_pantry: Optional[Pantry] = None
_lock = asyncio.Lock()


def _get_pantry() -> Pantry:
    """Lazy-init Pantry with default config (respects PANTRY_HOME env).

    Must be called inside ``async with _lock``; Pantry init is not
    safe to race on the global.
    """
    global _pantry
    if _pantry is None:
        _pantry = Pantry()
    return _pantry


def _optional(value: Optional[str]) -> Optional[str]:
    """Agents send "" for omitted fields; treat that as absent."""
    if value is None or not value.strip():
        return None
    return value


def _result_dict(r: SearchResult) -> dict:
    return {
        "id": r.id,
        "title": r.title,
        "what": r.what,
        "why": r.why,
        "impact": r.impact,
        "category": r.category,
        "tags": list(r.tags),
        "project": r.project,
        "source": r.source,
        "created_at": r.date,
        "score": round(r.score, 4),
        "has_details": r.has_details,
    }


# ---------------------------------------------------------------------------
# Tool annotations
# ---------------------------------------------------------------------------

_READ_ONLY = ToolAnnotations(readOnlyHint=True, destructiveHint=False)
_WRITE = ToolAnnotations(readOnlyHint=False, idempotentHint=False, destructiveHint=False)
_DESTRUCTIVE = ToolAnnotations(destructiveHint=True, idempotentHint=False)

ListInput = Optional[Union[list[str], str]]


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool(
    description=(
        "Store a note about the current work: a decision, pattern, bug fix, "
        "context or learning. A note whose title matches a recent note in the "
        "same project updates it instead of creating a new one. "
        "Secrets are redacted before anything is written."
    ),
    annotations=_WRITE,
)
async def pantry_store(
    title: Annotated[str, Field(
        description="Short descriptive title.",
    )],
    what: Annotated[str, Field(
        description="What happened or was decided.",
    )],
    why: Annotated[Optional[str], Field(
        description="Reasoning behind it.",
    )] = None,
    impact: Annotated[Optional[str], Field(
        description="What changed as a result.",
    )] = None,
    tags: Annotated[ListInput, Field(
        description='Tags, as an array or a comma-separated string. Example: ["auth", "db"]',
    )] = None,
    category: Annotated[Optional[str], Field(
        description="One of: decision, pattern, bug, context, learning.",
    )] = None,
    related_files: Annotated[ListInput, Field(
        description="Related file paths, as an array or a comma-separated string.",
    )] = None,
    details: Annotated[Optional[str], Field(
        description="Long-form details (stored separately, not searched).",
    )] = None,
    source: Annotated[Optional[str], Field(
        description="Name of the agent storing the note.",
    )] = None,
    project: Annotated[Optional[str], Field(
        description="Project name. Defaults to the current directory name.",
    )] = None,
) -> str:
    """Store a note."""
    async with _lock:
        try:
            raw = RawItemInput(
                title=title,
                what=what,
                why=_optional(why),
                impact=_optional(impact),
                category=_optional(category),
                source=_optional(source),
                details=_optional(details),
                tags=parse_list_param(tags),
                related_files=parse_list_param(related_files, case_insensitive=False),
            )
            result = _get_pantry().store(raw, project=_optional(project))
        except PantryError as e:
            return f"Error: {e}"
    return json.dumps(result.to_dict())


@mcp.tool(
    description=(
        "Search stored notes. Keyword matches come first; semantic matches "
        "are blended in when keyword hits are sparse. Higher score is better."
    ),
    annotations=_READ_ONLY,
)
async def pantry_search(
    query: Annotated[str, Field(
        description="Search query.",
    )],
    limit: Annotated[int, Field(
        description="Maximum results to return.",
        ge=1,
    )] = 5,
    project: Annotated[Optional[str], Field(
        description="Only notes from this project.",
    )] = None,
    source: Annotated[Optional[str], Field(
        description="Only notes from this source.",
    )] = None,
) -> str:
    """Search notes."""
    async with _lock:
        try:
            results = _get_pantry().search(
                query, limit=limit, project=_optional(project), source=_optional(source),
            )
        except PantryError as e:
            return f"Error: {e}"
    return json.dumps([_result_dict(r) for r in results])


@mcp.tool(
    description=(
        "Load recent notes for a project, for use at the start of a session. "
        "Returns the newest notes and the total number stored."
    ),
    annotations=_READ_ONLY,
)
async def pantry_context(
    limit: Annotated[int, Field(
        description="Maximum notes to return.",
        ge=1,
    )] = 10,
    project: Annotated[Optional[str], Field(
        description="Project name. Defaults to the current directory name.",
    )] = None,
    source: Annotated[Optional[str], Field(
        description="Only notes from this source.",
    )] = None,
) -> str:
    """Recent notes for session context."""
    async with _lock:
        try:
            project = resolve_project(_optional(project))
            ctx = _get_pantry().get_context(
                limit=limit, project=project, source=_optional(source),
                semantic="never", topup_recent=False,
            )
        except PantryError as e:
            return f"Error: {e}"
    memories = [
        {
            "id": r.id,
            "title": r.title,
            "category": r.category,
            "tags": list(r.tags),
            "date": r.date,
        }
        for r in ctx.results
    ]
    return json.dumps({"total": ctx.total, "showing": len(memories), "memories": memories})


@mcp.tool(
    description=(
        "Get the long-form details of a note. "
        "Accepts a full id or a unique id prefix from search results."
    ),
    annotations=_READ_ONLY,
)
async def pantry_get(
    id: Annotated[str, Field(
        description="Note id or id prefix.",
    )],
) -> str:
    """Retrieve note details."""
    async with _lock:
        try:
            pantry = _get_pantry()
            detail = pantry.get_details(id)
            if detail is None:
                return f"No details for: {id}"
            item, _ = pantry.get_item(detail.item_id)
        except PantryError as e:
            return f"Error: {e}"
    return json.dumps({
        "id": detail.item_id,
        "title": item.title if item is not None else None,
        "details": detail.body,
    })


@mcp.tool(
    description="Delete a note from the index. Its shelf file text is left in place.",
    annotations=_DESTRUCTIVE,
)
async def pantry_remove(
    id: Annotated[str, Field(
        description="Note id or id prefix.",
    )],
) -> str:
    """Delete a note."""
    async with _lock:
        try:
            deleted = _get_pantry().remove(id)
        except PantryError as e:
            return f"Error: {e}"
    return f"Removed: {id}" if deleted else f"Not found: {id}"


def main():
    """Run the MCP stdio server."""
    import os
    import signal
    # anyio's stdin reader shields the blocking readline from cancellation,
    # so the first Ctrl+C would not take effect without our own handler.
    signal.signal(signal.SIGINT, lambda *_: os._exit(130))
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
