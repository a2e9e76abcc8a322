"""Shared utility functions for recall-mcp."""

from __future__ import annotations

import hashlib
import math
import re
from datetime import datetime

STOPWORDS = frozenset(
    """
    the and or but in on at to for of with by a an is are was were be been have has had
    do does did will would could should can may might must i you he she it we they me him
    her us them this that these those my your our their its not no so if then than there
    what which who whom when where why how as from into about just also very
    """.split()
)

_TOKEN_RE = re.compile(r"[a-z0-9]+(?:'[a-z]+)?")


def now_iso() -> str:
    """Get current timestamp as ISO string."""
    return datetime.now().isoformat()


def content_hash(text: str) -> str:
    """Deterministic sha256 hex digest of ``text``."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 characters per token."""
    return math.ceil(len(text) / 4)


def tokenize(text: str) -> list[str]:
    """Lowercase word tokens with stopwords removed."""
    return [t for t in _TOKEN_RE.findall(text.lower()) if t not in STOPWORDS]


def escape_filter_value(value: str) -> str:
    """Escape single quotes in filter values to prevent injection."""
    return value.replace("'", "''")


def excerpt(text: str, length: int = 200) -> str:
    text = " ".join(text.split())
    return text if len(text) <= length else text[:length] + "..."


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO timestamp (``Z`` suffix allowed) into a naive local datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def created_since(value: str | None, after: datetime) -> bool:
    """True if the ISO timestamp ``value`` is at or after ``after``."""
    parsed = parse_timestamp(value)
    return parsed is not None and parsed >= after


def in_filter(column: str, values) -> str:
    """``column IN (...)`` over escaped string values."""
    quoted = ", ".join(f"'{escape_filter_value(v)}'" for v in sorted(values))
    return f"{column} IN ({quoted})"


def created_until(value: str | None, before: datetime) -> bool:
    """True if the ISO timestamp ``value`` is at or before ``before``."""
    parsed = parse_timestamp(value)
    return parsed is not None and parsed <= before
