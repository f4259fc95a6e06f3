"""Common utilities for stack orchestration."""

import hashlib
import json
from typing import Any, Iterator, Optional


def canonical_json(value: Any) -> str:
    """Serialize value to a stable JSON string (sorted keys, no whitespace)."""
    return json.dumps(value, sort_keys=True, separators=(',', ':'), default=str)


def content_hash(value: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form of value."""
    return hashlib.sha256(canonical_json(value).encode('utf-8')).hexdigest()


def backoff_intervals(initial: float, maximum: float, factor: float = 2.0) -> Iterator[float]:
    """Yield exponentially growing delays, capped at maximum."""
    delay = initial
    while True:
        yield min(delay, maximum)
        delay = min(delay * factor, maximum)


def parse_key_values(pairs: Optional[list[str]]) -> dict[str, str]:
    """Parse ['key=value', ...] into a dict.

    Raises:
        ValueError: If an entry has no '='
    """
    result: dict[str, str] = {}
    for pair in pairs or []:
        if '=' not in pair:
            raise ValueError(f"Expected key=value, got '{pair}'")
        key, value = pair.split('=', 1)
        result[key.strip()] = value
    return result
