"""Readable ids for challenges and matches: ``CHALL-2025-001``, ``MATCH-2025-014``."""

import re
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

CHALLENGE_PREFIX = "CHALL"
MATCH_PREFIX = "MATCH"

_YEAR_RE = re.compile(r"(CHALL|MATCH)-(\d{4})-")
_SEQUENCE_RE = re.compile(r"(CHALL|MATCH)-(?:LEGACY-|\d{4}-)(\d+)")


def _next_id(prefix: str, key: str, existing: Iterable[Dict[str, Any]], year: Optional[int]) -> str:
    year = year or datetime.now().year
    head = f"{prefix}-{year}-"
    highest = 0
    for item in existing or ():
        value = (item or {}).get(key)
        if not isinstance(value, str) or not value.startswith(head):
            continue
        m = re.match(rf"{prefix}-\d{{4}}-(\d+)", value)
        if m:
            highest = max(highest, int(m.group(1)))
    return f"{head}{highest + 1:03d}"


def generate_challenge_id(existing: Iterable[Dict[str, Any]] = (), year: Optional[int] = None) -> str:
    return _next_id(CHALLENGE_PREFIX, "challenge_id", existing, year)


def generate_match_id(existing: Iterable[Dict[str, Any]] = (), year: Optional[int] = None) -> str:
    return _next_id(MATCH_PREFIX, "match_id", existing, year)


def generate_legacy_challenge_id(index: int) -> str:
    """Id for the ``index``-th (zero-based) challenge imported from a timestamp-keyed record."""
    return f"{CHALLENGE_PREFIX}-LEGACY-{index + 1:03d}"


def generate_legacy_match_id(index: int) -> str:
    return f"{MATCH_PREFIX}-LEGACY-{index + 1:03d}"


def is_legacy_id(value: Any) -> bool:
    return isinstance(value, str) and "LEGACY" in value


def get_year_from_id(value: Any) -> Optional[int]:
    if not isinstance(value, str):
        return None
    m = _YEAR_RE.search(value)
    return int(m.group(2)) if m else None


def get_sequence_from_id(value: Any) -> Optional[int]:
    if not isinstance(value, str):
        return None
    m = _SEQUENCE_RE.search(value)
    return int(m.group(2)) if m else None
