"""
Best-effort removal of secrets from free text before it is persisted.

Three layers, always applied in this order:

1. Explicit ``<redacted>...</redacted>`` spans (nesting allowed).
2. Built-in recognizers for common secret shapes.
3. Custom patterns from the ``.pantryignore`` file, one regex per line.
"""

import logging
import re
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

_OPEN_TAG = "<redacted>"
_CLOSE_TAG = "</redacted>"

# Innermost span only: the body may not contain another opening tag.
# Outer spans collapse on the next pass once their children are markers.
_INNERMOST_SPAN_RE = re.compile(r"<redacted>(?:(?!<redacted>).)*?</redacted>", re.DOTALL)

SENSITIVE_PATTERNS = [
    r"sk_live_[a-zA-Z0-9]+",                        # Stripe live keys
    r"sk_test_[a-zA-Z0-9]+",                        # Stripe test keys
    r"ghp_[a-zA-Z0-9]+",                            # GitHub personal access tokens
    r"AKIA[0-9A-Z]{16}",                            # AWS access key ids
    r"xoxb-[a-zA-Z0-9-]+",                          # Slack bot tokens
    r"-----BEGIN (?:RSA |EC |OPENSSH )?PRIVATE KEY-----",
    r"eyJ[a-zA-Z0-9_-]+\.eyJ[a-zA-Z0-9_-]+",        # JWTs
    r"(?i)password\s*[:=]\s*[\"']?.+",
    r"(?i)secret\s*[:=]\s*[\"']?.+",
    r"(?i)api[_-]?key\s*[:=]\s*[\"']?.+",
]


def compile_patterns(patterns: Iterable[str]) -> list[re.Pattern]:
    """Compile regex patterns, skipping (and logging) any that are invalid."""
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as e:
            logger.warning("Skipping invalid redaction pattern %r: %s", pattern, e)
    return compiled


_BUILTIN = compile_patterns(SENSITIVE_PATTERNS)


def _strip_tags(text: str) -> str:
    """Replace explicit spans, then drop orphan tags until none are left."""
    while True:
        replaced = _INNERMOST_SPAN_RE.sub(REDACTED, text)
        if replaced == text:
            break
        text = replaced

    # Removing one orphan can join two fragments into a new tag, so loop.
    while _OPEN_TAG in text or _CLOSE_TAG in text:
        text = text.replace(_OPEN_TAG, "").replace(_CLOSE_TAG, "")
    return text


def redact_compiled(text: str, extra: Iterable[re.Pattern] = ()) -> str:
    """Apply all three layers using pre-compiled custom patterns."""
    text = _strip_tags(text)
    for pattern in _BUILTIN:
        text = pattern.sub(REDACTED, text)
    for pattern in extra:
        text = pattern.sub(REDACTED, text)
    return text


def redact(text: str, extra_patterns: Iterable[str] = ()) -> str:
    """Apply all three layers; custom patterns are given as regex strings."""
    return redact_compiled(text, compile_patterns(extra_patterns))


def load_ignore_file(path: Path) -> list[str]:
    """
    Read custom redaction patterns.

    One regular expression per line; blank lines and lines starting with
    '#' are skipped. A missing file yields no patterns.
    """
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    patterns = []
    for line in content.splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            patterns.append(line)
    return patterns


class Redactor:
    """Redaction with a fixed set of custom patterns compiled once."""

    def __init__(self, patterns: Iterable[str] = ()):
        self._custom = compile_patterns(patterns)

    @classmethod
    def from_ignore_file(cls, path: Path) -> "Redactor":
        try:
            patterns = load_ignore_file(path)
        except OSError as e:
            logger.warning("Failed to read %s: %s", path, e)
            patterns = []
        return cls(patterns)

    @property
    def custom_pattern_count(self) -> int:
        return len(self._custom)

    def redact(self, text: str) -> str:
        return redact_compiled(text, self._custom)

    def redact_optional(self, text: Optional[str]) -> Optional[str]:
        if text is None:
            return None
        return self.redact(text)
