"""
Coercion of list-valued tool parameters.

Agents send ``tags`` and ``related_files`` in three shapes: a real array,
a comma-separated string, or a string holding a JSON array. Each shape is
classified into its own type and parsed by its own function, so the core
only ever sees a clean ``list[str]``.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from .errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StringList:
    """An actual array of values."""
    values: tuple[str, ...]


@dataclass(frozen=True)
class DelimitedString:
    """Comma-separated values in one string."""
    text: str


@dataclass(frozen=True)
class JSONEncodedString:
    """A string that looks like a JSON array."""
    text: str


ListParam = Union[StringList, DelimitedString, JSONEncodedString]


def classify_list_param(value: Any) -> Optional[ListParam]:
    """
    Tag a raw parameter value with its shape. None stays None.

    Raises:
        ValidationError: For values that are neither strings nor arrays
    """
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return StringList(tuple(str(v) for v in value if v is not None))
    if isinstance(value, str):
        if value.lstrip().startswith("["):
            return JSONEncodedString(value)
        return DelimitedString(value)
    raise ValidationError("list", f"expected a string or an array, got {type(value).__name__}")


def parse_string_list(param: StringList) -> list[str]:
    return list(param.values)


def parse_delimited(param: DelimitedString) -> list[str]:
    return param.text.split(",")


def parse_json_encoded(param: JSONEncodedString) -> list[str]:
    """Decode a JSON array; anything else is treated as a delimited string."""
    try:
        decoded = json.loads(param.text)
    except json.JSONDecodeError as e:
        logger.debug("List parameter is not valid JSON (%s), splitting on commas", e)
        return parse_delimited(DelimitedString(param.text))
    if not isinstance(decoded, list):
        return parse_delimited(DelimitedString(param.text))
    return [str(v) for v in decoded if v is not None]


def _dedupe(values: list[str], case_insensitive: bool) -> list[str]:
    result = []
    seen = set()
    for v in values:
        v = v.strip()
        if not v:
            continue
        key = v.casefold() if case_insensitive else v
        if key not in seen:
            seen.add(key)
            result.append(v)
    return result


def parse_list_param(value: Any, *, case_insensitive: bool = True) -> list[str]:
    """
    Normalize any accepted shape into a list of unique, trimmed strings.

    Order of first appearance is kept. ``case_insensitive`` controls
    whether 'Auth' and 'auth' count as the same value.
    """
    param = classify_list_param(value)
    if param is None:
        return []
    if isinstance(param, StringList):
        values = parse_string_list(param)
    elif isinstance(param, JSONEncodedString):
        values = parse_json_encoded(param)
    else:
        values = parse_delimited(param)
    return _dedupe(values, case_insensitive)
