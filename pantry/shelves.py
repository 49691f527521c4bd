"""
Markdown shelves: one human-readable notes file per project and day.

A shelf file looks like::

    ---
    project: myproj
    sources: [claude]
    created: 2025-01-01T10:00:00Z
    tags: [auth, db]
    ---

    # 2025-01-01 Notes

    ## Decisions

    ### Use Postgres
    **What:** Switched from SQLite

    ## Bugs Fixed

    ### ...

Category headings always appear in CATEGORIES order. Each item's section
is written once and never rewritten; new sections are spliced in as
whole lines. The item store is the source of truth, so shelves can be
deleted and rebuilt.
"""

import os
import re
from pathlib import Path
from typing import NamedTuple, Optional

from .types import CATEGORIES, CATEGORY_HEADINGS, Item, utc_now

HEADER_DELIM = "---"
SHELF_SUFFIX = "-notes.md"

_HEADING_PREFIX = "## "
# Lines the body parser treats as structure: headings and <details> tags
_STRUCTURAL_LINE_RE = re.compile(r"^([ \t]*)(#{1,6}(?=\s|$)|</?details)", re.MULTILINE | re.IGNORECASE)
_HEADING_ORDER = {CATEGORY_HEADINGS[c]: i for i, c in enumerate(CATEGORIES)}


def shelf_path(project_dir: Path, date_key: str) -> Path:
    """Path of the notes file for one day."""
    return Path(project_dir) / f"{date_key}{SHELF_SUFFIX}"


class ShelfFile(NamedTuple):
    date: str
    project: str
    path: Path


def list_shelves(shelves_dir: Path, project: Optional[str] = None) -> list[ShelfFile]:
    """
    Shelf files under ``shelves_dir``, newest date first.

    Hidden project directories are skipped. A missing directory yields [].
    """
    try:
        project_dirs = [p for p in Path(shelves_dir).iterdir()
                        if p.is_dir() and not p.name.startswith(".")]
    except FileNotFoundError:
        return []
    files = []
    for project_dir in project_dirs:
        if project is not None and project_dir.name != project:
            continue
        for path in project_dir.glob(f"*{SHELF_SUFFIX}"):
            files.append(ShelfFile(path.name[:-len(SHELF_SUFFIX)], project_dir.name, path))
    files.sort(key=lambda f: (f.date, f.project), reverse=True)
    return files


def _escape_structural_lines(text: str) -> str:
    """Backslash-escape every line that would read as a heading or a <details> tag."""
    return _STRUCTURAL_LINE_RE.sub(r"\1\\\2", text)


def _escape_field(text: str) -> str:
    # The first line follows a "**Label:**" prefix; only continuation lines
    # can be mistaken for structure on the next write.
    first, sep, rest = text.rstrip().partition("\n")
    return first + sep + _escape_structural_lines(rest)


def _one_line(text: str) -> str:
    return " ".join(text.split())


def render_section(item: Item, details: Optional[str] = None) -> str:
    """Render one item as an H3 subsection."""
    lines = [
        f"### {_one_line(item.title)}",
        f"**What:** {_escape_field(item.what)}",
    ]
    if item.why is not None:
        lines.append(f"**Why:** {_escape_field(item.why)}")
    if item.impact is not None:
        lines.append(f"**Impact:** {_escape_field(item.impact)}")
    if item.source is not None:
        lines.append(f"**Source:** {_escape_field(item.source)}")
    if details is not None:
        body = _escape_structural_lines(details.strip("\n"))
        lines.extend(["", "<details>", body, "</details>"])
    return "\n".join(lines)


def sorted_tags(tags) -> list[str]:
    """Dedupe case-insensitively (first spelling wins), sort alphabetically."""
    seen: dict[str, str] = {}
    for tag in tags:
        tag = _one_line(tag)
        if tag and tag.casefold() not in seen:
            seen[tag.casefold()] = tag
    return sorted(seen.values(), key=str.casefold)


def _bracketed(values: list[str]) -> str:
    return "[" + ", ".join(values) + "]"


def _new_file(item: Item, date_key: str, section: str) -> str:
    lines = [HEADER_DELIM, f"project: {item.project}"]
    if item.source:
        lines.append(f"sources: {_bracketed([_one_line(item.source)])}")
    lines.append(f"created: {utc_now()}")
    tags = sorted_tags(item.tags)
    if tags:
        lines.append(f"tags: {_bracketed(tags)}")
    lines.extend([HEADER_DELIM, "", f"# {date_key} Notes", ""])
    if item.category:
        lines.extend([_HEADING_PREFIX + CATEGORY_HEADINGS[item.category], ""])
    lines.append(section)
    return "\n".join(lines) + "\n"


def split_header(lines: list[str]) -> tuple[list[str], list[str]]:
    """
    Split file lines into (header, body).

    The header runs from a leading '---' line to the next '---' line,
    both included. Without one the header is empty.
    """
    if lines and lines[0].strip() == HEADER_DELIM:
        for i in range(1, len(lines)):
            if lines[i].strip() == HEADER_DELIM:
                return lines[: i + 1], lines[i + 1:]
    return [], lines


def parse_bracketed_list(value: str) -> list[str]:
    """Values of a '[a, b, c]' header field; [] if there are no brackets."""
    start = value.find("[")
    end = value.find("]", start + 1)
    if start == -1 or end == -1:
        return []
    return [v.strip() for v in value[start + 1:end].split(",") if v.strip()]


def update_header(header: list[str], item: Item) -> list[str]:
    """
    Merge the item's tags and source into the header.

    Lines other than ``tags:`` and ``sources:`` pass through unchanged.
    A missing tags or sources line is added when there is a value for it.
    """
    if not header:
        return header

    existing_tags: list[str] = []
    sources: list[str] = []
    for line in header:
        if line.startswith("tags:"):
            existing_tags = parse_bracketed_list(line)
        elif line.startswith("sources:"):
            sources = parse_bracketed_list(line)

    tags = sorted_tags(existing_tags + list(item.tags))
    source = _one_line(item.source or "")
    if source and source not in sources:
        sources.append(source)

    updated = []
    saw_tags = saw_sources = False
    for line in header:
        if line.startswith("tags:"):
            updated.append(f"tags: {_bracketed(tags)}")
            saw_tags = True
        elif line.startswith("sources:"):
            updated.append(f"sources: {_bracketed(sources)}")
            saw_sources = True
        else:
            updated.append(line)

    if not saw_sources and sources:
        # after the project line when there is one, else before the closing delimiter
        at = next((i + 1 for i, l in enumerate(updated) if l.startswith("project:")), len(updated) - 1)
        updated.insert(at, f"sources: {_bracketed(sources)}")
    if not saw_tags and tags:
        updated.insert(len(updated) - 1, f"tags: {_bracketed(tags)}")
    return updated


def _category_headings(body: list[str]) -> list[tuple[int, str]]:
    """(line index, heading text) of H2 headings outside <details> blocks."""
    headings = []
    in_details = False
    for i, line in enumerate(body):
        stripped = line.strip()
        if stripped.startswith("<details"):
            in_details = True
        elif stripped.startswith("</details"):
            in_details = False
        elif not in_details and line.startswith(_HEADING_PREFIX):
            headings.append((i, line[len(_HEADING_PREFIX):].strip()))
    return headings


def _content_end(body: list[str], start: int, stop: int) -> int:
    """Index just past the last non-blank line in body[start:stop]."""
    end = stop
    while end > start and not body[end - 1].strip():
        end -= 1
    return end


def insert_section(body: list[str], category: Optional[str], section: str) -> list[str]:
    """
    Splice a rendered section into the body.

    - no category: appended at the end
    - heading present: appended as the last subsection under it
    - heading absent: heading and section inserted before the first
      present heading that comes later in CATEGORIES order, else appended
    """
    section_lines = section.split("\n")

    if not category:
        end = _content_end(body, 0, len(body))
        return body[:end] + [""] + section_lines

    heading = CATEGORY_HEADINGS[category]
    headings = _category_headings(body)

    for n, (index, text) in enumerate(headings):
        if text == heading:
            stop = headings[n + 1][0] if n + 1 < len(headings) else len(body)
            end = _content_end(body, index + 1, stop)
            tail = body[stop:]
            return body[:end] + [""] + section_lines + ([""] if tail else []) + tail

    target = _HEADING_ORDER[heading]
    for index, text in headings:
        if _HEADING_ORDER.get(text, -1) > target:
            end = _content_end(body, 0, index)
            return (body[:end] + ["", _HEADING_PREFIX + heading, ""] + section_lines + [""]
                    + body[index:])

    end = _content_end(body, 0, len(body))
    return body[:end] + ["", _HEADING_PREFIX + heading, ""] + section_lines


def _atomic_write(path: Path, content: str) -> None:
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(content, encoding="utf-8")
    os.replace(tmp, path)


def write_item(
    project_dir: Path,
    item: Item,
    date_key: str,
    details: Optional[str] = None,
) -> Path:
    """
    Add an item's section to the shelf for ``date_key``.

    Creates the file (and project directory) on first use.

    Returns:
        Path of the shelf file

    Raises:
        OSError: If the file cannot be read or written
    """
    project_dir = Path(project_dir)
    project_dir.mkdir(parents=True, exist_ok=True)
    path = shelf_path(project_dir, date_key)
    section = render_section(item, details)

    if not path.exists():
        _atomic_write(path, _new_file(item, date_key, section))
        return path

    lines = path.read_text(encoding="utf-8").split("\n")
    header, body = split_header(lines)
    body = insert_section(body, item.category, section)
    _atomic_write(path, "\n".join(update_header(header, item) + body) + "\n")
    return path


def snapshot(path: Path) -> Optional[str]:
    """Current content of a shelf file, or None if it does not exist."""
    try:
        return Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def restore(path: Path, previous: Optional[str]) -> None:
    """Put a shelf file back to a snapshot() result."""
    path = Path(path)
    if previous is None:
        path.unlink(missing_ok=True)
    else:
        _atomic_write(path, previous)
