"""Deterministic serialization and digests for idempotency keys and change detection."""

from __future__ import annotations

import hashlib
import json
import math
import re
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any

_LONE_SURROGATE_RE = re.compile("[\ud800-\udfff]")


class CycleError(ValueError):
    """Raised when a payload references the same container more than once."""


def stable_json_stringify(value: Any) -> str:
    """Serialize ``value`` as compact JSON with object keys sorted at every level.

    Sequences keep their order and sets are sorted by their serialized
    elements. Values JSON cannot represent are coerced to their string form
    (``datetime`` uses ISO 8601), and non-finite floats become ``null``.
    Lone surrogates are written as ``\\uXXXX`` escapes. Every dict, list or
    set may appear only once in the graph.
    """
    normalized = _stable(value, seen=set())
    text = json.dumps(normalized, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    return _LONE_SURROGATE_RE.sub(lambda match: f"\\u{ord(match.group()):04x}", text)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8", errors="surrogatepass")).hexdigest()


def content_hash(payload: Any) -> str:
    return sha256_hex(stable_json_stringify(payload))


def _stable(value: Any, *, seen: set[int]) -> Any:
    if value is None or isinstance(value, (bool, str, int)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, Mapping):
        _mark_seen(value, seen)
        items = [(str(key), item) for key, item in value.items()]
        items.sort(key=lambda pair: pair[0])
        return {key: _stable(item, seen=seen) for key, item in items}
    if isinstance(value, list):
        _mark_seen(value, seen)
        return [_stable(item, seen=seen) for item in value]
    if isinstance(value, tuple):
        return [_stable(item, seen=seen) for item in value]
    if isinstance(value, (set, frozenset)):
        _mark_seen(value, seen)
        elements = [_stable(item, seen=seen) for item in value]
        elements.sort(key=_sort_key)
        return elements
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _sort_key(element: Any) -> str:
    return json.dumps(element, separators=(",", ":"), ensure_ascii=True, allow_nan=False)


def _mark_seen(container: Any, seen: set[int]) -> None:
    marker = id(container)
    if marker in seen:
        raise CycleError("cycle detected while serializing payload")
    seen.add(marker)
