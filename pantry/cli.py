"""
CLI interface for pantry.

Usage:
    pantry store "Use Postgres" --what "Switched from SQLite" --category decision
    pantry search "database"
    pantry list --project myproj
    pantry doctor
    pantry mcp
"""

import atexit
import json
import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import typer
from typing_extensions import Annotated

from .api import Pantry
from .config import (
    CONFIG_FILENAME,
    PantryConfig,
    get_pantry_home,
    init_home,
    load_config,
    set_config_value,
)
from .errors import ConfigError, PantryError, ProviderError, log_exception
from .logging_config import configure_quiet_mode, enable_debug_mode
from .params import parse_list_param
from .redaction import SENSITIVE_PATTERNS, Redactor, load_ignore_file
from .shelves import list_shelves
from .types import CATEGORIES, RawItemInput, SearchResult

# Set PANTRY_VERBOSE=1 to enable debug mode via environment
if os.environ.get("PANTRY_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_home_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _home_callback(value: Optional[Path]):
    global _home_override
    if value is not None:
        _home_override = value
        # error log and MCP server resolve the home from the environment
        os.environ["PANTRY_HOME"] = str(value)


def _get_home_override() -> Optional[Path]:
    return _home_override


app = typer.Typer(
    name="pantry",
    help="Persistent notes for coding agents.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    home: Annotated[Optional[Path], typer.Option(
        "--home",
        envvar="PANTRY_HOME",
        help="Path to the pantry home directory",
        callback=_home_callback,
        is_eager=True,
    )] = None,
):
    """Persistent notes for coding agents."""


@contextmanager
def _errors(command: str) -> Iterator[None]:
    """Report pantry errors as a one-line message and exit 1."""
    try:
        yield
    except PantryError as e:
        log_path = log_exception(e, context=f"pantry {command}")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise typer.Exit(1)


def _get_pantry() -> Pantry:
    """Open the pantry, closing it at interpreter exit."""
    with _errors("init"):
        pantry = Pantry(_get_home_override())
    atexit.register(pantry.close)
    return pantry


# -----------------------------------------------------------------------------
# Output Formatting
# -----------------------------------------------------------------------------

def _format_result(r: SearchResult, show_score: bool) -> str:
    parts = [r.id[:8], r.date]
    if r.category:
        parts.append(f"[{r.category}]")
    if show_score:
        parts.append(f"({r.score:.3f})")
    parts.append(r.title)
    line = " ".join(parts)
    if r.tags:
        line += "  #" + " #".join(r.tags)
    if r.has_details:
        line += "  +details"
    return line


def _format_results(results: list[SearchResult], show_score: bool = True) -> str:
    if _get_json_output():
        return json.dumps([r.to_dict() for r in results], indent=2)
    if not results:
        return "No results."
    return "\n".join(_format_result(r, show_score) for r in results)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def init():
    """Create the home directory and a commented default config."""
    with _errors("init"):
        config, created = init_home(_get_home_override())
        Pantry(config=config).close()
    if _get_json_output():
        typer.echo(json.dumps({"home": str(config.path), "created": created}))
    elif created:
        typer.echo(f"Initialized pantry at {config.path}")
        typer.echo(f"Edit {config.config_path} to choose an embedding provider.")
    else:
        typer.echo(f"Pantry already initialized at {config.path}")


@app.command()
def store(
    title: Annotated[str, typer.Argument(help="Short descriptive title")],
    what: Annotated[str, typer.Option("--what", "-w", help="What happened or was decided")],
    why: Annotated[Optional[str], typer.Option("--why", help="Reasoning behind it")] = None,
    impact: Annotated[Optional[str], typer.Option("--impact", help="What changed as a result")] = None,
    category: Annotated[Optional[str], typer.Option(
        "--category", "-c",
        help=f"One of: {', '.join(CATEGORIES)}",
    )] = None,
    tags: Annotated[Optional[str], typer.Option(
        "--tags", "-t",
        help="Comma-separated tags",
    )] = None,
    files: Annotated[Optional[str], typer.Option(
        "--files", "-f",
        help="Comma-separated related file paths",
    )] = None,
    details: Annotated[Optional[str], typer.Option(
        "--details", "-d",
        help="Long-form details ('-' reads stdin)",
    )] = None,
    source: Annotated[Optional[str], typer.Option("--source", "-s", help="Agent or user name")] = None,
    project: Annotated[Optional[str], typer.Option(
        "--project", "-p",
        help="Project name (default: current directory name)",
    )] = None,
):
    """Store a note, or update a matching note in the same project."""
    if details == "-":
        details = sys.stdin.read()
    kp = _get_pantry()
    with _errors("store"):
        raw = RawItemInput(
            title=title,
            what=what,
            why=why,
            impact=impact,
            category=category,
            source=source,
            details=details,
            tags=parse_list_param(tags),
            related_files=parse_list_param(files, case_insensitive=False),
        )
        result = kp.store(raw, project=project)
    if _get_json_output():
        typer.echo(json.dumps(result.to_dict()))
    else:
        typer.echo(f"{result.action.capitalize()}: {result.id}")
        typer.echo(f"  {result.file_path}")


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search query")],
    limit: Annotated[int, typer.Option("--limit", "-n", min=1, help="Maximum results")] = 5,
    project: Annotated[Optional[str], typer.Option("--project", "-p", help="Filter by project")] = None,
    source: Annotated[Optional[str], typer.Option("--source", "-s", help="Filter by source")] = None,
    keyword_only: Annotated[bool, typer.Option(
        "--keyword-only", "-k",
        help="Skip semantic search",
    )] = False,
):
    """Search notes by keyword, with semantic fallback."""
    kp = _get_pantry()
    with _errors("search"):
        results = kp.search(query, limit, project, source, use_vectors=not keyword_only)
    typer.echo(_format_results(results))


@app.command("list")
def list_cmd(
    limit: Annotated[int, typer.Option("--limit", "-n", min=1, help="Maximum notes")] = 10,
    project: Annotated[Optional[str], typer.Option("--project", "-p", help="Filter by project")] = None,
    source: Annotated[Optional[str], typer.Option("--source", "-s", help="Filter by source")] = None,
    query: Annotated[Optional[str], typer.Option(
        "--query", "-q",
        help="Select by relevance instead of recency",
    )] = None,
):
    """List recent notes (the session context)."""
    kp = _get_pantry()
    with _errors("list"):
        ctx = kp.get_context(limit=limit, project=project, source=source, query=query)
    if _get_json_output():
        typer.echo(json.dumps({
            "total": ctx.total,
            "showing": len(ctx.results),
            "results": [r.to_dict() for r in ctx.results],
        }, indent=2))
        return
    typer.echo(_format_results(ctx.results, show_score=query is not None))
    if ctx.results:
        typer.echo(f"({len(ctx.results)} of {ctx.total})", err=True)


@app.command()
def retrieve(
    id: Annotated[str, typer.Argument(help="Note id or id prefix")],
):
    """Print a note's long-form details."""
    kp = _get_pantry()
    with _errors("retrieve"):
        detail = kp.get_details(id)
    if detail is None:
        typer.echo(f"No details for: {id}", err=True)
        raise typer.Exit(1)
    if _get_json_output():
        typer.echo(json.dumps({"id": detail.item_id, "details": detail.body}))
    else:
        typer.echo(detail.body)


@app.command()
def remove(
    id: Annotated[str, typer.Argument(help="Note id or id prefix")],
):
    """Delete a note from the index (shelf text is kept)."""
    kp = _get_pantry()
    with _errors("remove"):
        deleted = kp.remove(id)
    if not deleted:
        typer.echo(f"Not found: {id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Removed: {id}")


@app.command()
def reindex():
    """Rebuild the vector index with the configured embedding provider."""
    kp = _get_pantry()

    def progress(current: int, total: int) -> None:
        if not _get_json_output():
            typer.echo(f"\rEmbedding {current}/{total}", err=True, nl=False)

    with _errors("reindex"):
        result = kp.reindex(progress=progress)
    if _get_json_output():
        typer.echo(json.dumps(result.to_dict()))
        return
    if result.count:
        typer.echo("", err=True)
    typer.echo(
        f"Reindexed {result.embedded}/{result.count} notes "
        f"(model={result.model}, dim={result.dim})"
    )


def _config_values(config) -> dict:
    emb = config.embedding
    return {
        "file": str(config.config_path),
        "home": str(config.path),
        "db": str(config.db_path),
        "shelves": str(config.shelves_dir),
        "embedding.provider": emb.provider or "none",
        "embedding.model": emb.model,
        "embedding.base_url": emb.base_url,
        "embedding.api_key": "***" if emb.api_key else None,
        "embedding.timeout": emb.timeout,
        "context.semantic": config.context.semantic,
        "context.topup_recent": config.context.topup_recent,
    }


@app.command()
def config(
    path: Annotated[Optional[str], typer.Argument(
        help="Config value to get (e.g., 'file', 'home', 'embedding.provider')"
    )] = None,
    value: Annotated[Optional[str], typer.Argument(
        help="New value to save for PATH in config.toml",
    )] = None,
):
    """
    Show configuration. Optionally get or set a specific value by path.

    \b
    Examples:
        pantry config                             # Show all config
        pantry config file                        # Config file location
        pantry config embedding.provider          # Embedding provider name
        pantry config embedding.provider openai   # Switch provider
    """
    if path and value is not None:
        with _errors("config"):
            set_config_value(_get_home_override(), path, value)
        shown = "***" if path == "embedding.api_key" and value else value
        if _get_json_output():
            typer.echo(json.dumps({path: shown}))
        else:
            typer.echo(f"Set {path} = {shown}")
        return

    with _errors("config"):
        cfg = load_config(_get_home_override())
    values = _config_values(cfg)

    if path:
        if path not in values:
            typer.echo(f"Unknown config path: {path}. Valid: {', '.join(values)}", err=True)
            raise typer.Exit(1)
        value = values[path]
        if _get_json_output():
            typer.echo(json.dumps({path: value}))
        else:
            typer.echo("" if value is None else str(value))
        return

    if _get_json_output():
        typer.echo(json.dumps(values, indent=2))
        return
    if not cfg.exists():
        typer.echo(f"# no {CONFIG_FILENAME} yet; run 'pantry init'", err=True)
    width = max(len(k) for k in values)
    for key, value in values.items():
        typer.echo(f"{key.ljust(width)}  {'' if value is None else value}")


@app.command()
def notes(
    limit: Annotated[int, typer.Option("--limit", "-n", min=1, help="Maximum files")] = 10,
    project: Annotated[Optional[str], typer.Option("--project", "-p", help="Filter by project")] = None,
):
    """List daily note files, newest first."""
    with _errors("notes"):
        cfg = load_config(_get_home_override())
    files = list_shelves(cfg.shelves_dir, project)[:limit]
    if _get_json_output():
        typer.echo(json.dumps(
            [{"date": f.date, "project": f.project, "path": str(f.path)} for f in files],
            indent=2,
        ))
        return
    if not files:
        typer.echo("No notes found.")
        return
    width = max(len(f.project) for f in files)
    typer.echo("Notes:")
    for f in files:
        typer.echo(f"  {f.date} | {f.project.ljust(width)} | {f.path}")


app.command("log", help="Alias for 'notes'.")(notes)


_PASS, _WARN, _FAIL = "pass", "warn", "fail"
_SYMBOLS = {_PASS: "✓", _WARN: "!", _FAIL: "✗"}


class _Checks:
    """Collects doctor results grouped by section."""

    def __init__(self):
        self.items: list[dict] = []
        self._section = ""

    def section(self, name: str) -> None:
        self._section = name

    def add(self, status: str, check: str, detail: str) -> None:
        self.items.append({
            "section": self._section,
            "status": status,
            "check": check,
            "detail": detail,
        })

    @property
    def ok(self) -> bool:
        return all(c["status"] != _FAIL for c in self.items)


def _check_path(checks: _Checks, name: str, path: Path, required: bool, hint: str) -> None:
    if path.exists():
        checks.add(_PASS, name, str(path))
    elif required:
        checks.add(_FAIL, name, f"missing; {hint}")
    else:
        checks.add(_WARN, name, hint)


def _run_checks(home: Path) -> _Checks:
    checks = _Checks()
    paths = PantryConfig(path=home)

    checks.section("Filesystem")
    _check_path(checks, "home directory", paths.path, True, "run 'pantry init'")
    _check_path(checks, "index.db", paths.db_path, True, "run 'pantry init'")
    _check_path(checks, "shelves/", paths.shelves_dir, True, "run 'pantry init'")
    _check_path(checks, CONFIG_FILENAME, paths.config_path, False, "not found, using defaults")
    _check_path(checks, ".pantryignore", paths.ignore_path, False, "not found (optional)")

    checks.section("Configuration")
    cfg: Optional[PantryConfig] = None
    try:
        loaded = load_config(home)
    except ConfigError as e:
        checks.add(_FAIL, "config file", str(e))
    else:
        checks.add(_PASS, "config file", "parsed" if loaded.exists() else "defaults")
        try:
            loaded.validate()
            checks.add(_PASS, "values", "valid")
            cfg = loaded
        except ConfigError as e:
            checks.add(_FAIL, "values", str(e))
    if cfg is not None:
        emb = cfg.embedding
        checks.add(_PASS, "embedding provider",
                   f"{emb.provider or 'none'} / {emb.model} @ {emb.base_url or '(default)'}")
        checks.add(_PASS, "context.semantic", cfg.context.semantic)

    checks.section("Redaction")
    checks.add(_PASS, "built-in patterns", str(len(SENSITIVE_PATTERNS)))
    try:
        patterns = load_ignore_file(paths.ignore_path)
    except OSError as e:
        checks.add(_FAIL, ".pantryignore patterns", f"unreadable: {e}")
    else:
        compiled = Redactor(patterns).custom_pattern_count
        if compiled < len(patterns):
            checks.add(_WARN, ".pantryignore patterns",
                       f"{compiled} of {len(patterns)} valid; invalid patterns are skipped")
        else:
            checks.add(_PASS, ".pantryignore patterns", str(compiled))

    checks.section("Database & search")
    if cfg is None:
        checks.add(_WARN, "database", "skipped; fix the configuration first")
        return checks
    if not paths.db_path.exists():
        # opening would create it
        checks.add(_WARN, "database", "skipped; run 'pantry init'")
        return checks
    try:
        pantry = Pantry(config=cfg)
    except PantryError as e:
        checks.add(_FAIL, "database", str(e))
        return checks
    try:
        checks.add(_PASS, "notes", str(pantry.count()))
        checks.add(_PASS, "FTS5 search", "available")
        if pantry.vectors_available():
            checks.add(_PASS, "vector search", "available")
        else:
            checks.add(_WARN, "vector search",
                       "not available; run 'pantry reindex' after configuring embeddings")

        checks.section("Embedding provider")
        if cfg.embedding.provider is None:
            checks.add(_WARN, "provider", "none configured; keyword search only")
        else:
            try:
                _, dim = pantry.check_embedding()
                checks.add(_PASS, "live embedding", f"ok, {dim} dimensions")
            except ProviderError as e:
                checks.add(_FAIL, "live embedding", str(e))
    finally:
        pantry.close()
    return checks


@app.command()
def doctor():
    """Check the home directory, configuration, index and embedding provider."""
    home = _get_home_override() or get_pantry_home()
    checks = _run_checks(home)

    if _get_json_output():
        typer.echo(json.dumps({"ok": checks.ok, "checks": checks.items}, indent=2))
    else:
        typer.echo(f"Pantry home: {home}")
        section = None
        for c in checks.items:
            if c["section"] != section:
                section = c["section"]
                typer.echo(f"\n{section}")
            typer.echo(f"  {_SYMBOLS[c['status']]} {c['check']}: {c['detail']}")
        typer.echo("")
        if checks.ok:
            typer.echo("All checks passed.")
        else:
            typer.echo("Some checks failed. Fix the issues above.")
    if not checks.ok:
        raise typer.Exit(1)


@app.command()
def mcp():
    """Start MCP stdio server for AI agent integration."""
    from .mcp import main as mcp_main
    mcp_main()


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        log_path = log_exception(e, context="pantry CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
