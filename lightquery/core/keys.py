"""
Canonical serialization and structural matching of query keys.
"""

import json
from typing import Any, Optional

from lightquery.shared.errors import KeySerializationError
from lightquery.core.types import QueryKey


def serialize_key(key: QueryKey) -> str:
    """Serialize a key to its canonical string form.

    Object segments are written with sorted keys so semantically equal keys
    always map to the same cache slot. Tuples serialize like lists.
    """
    try:
        return json.dumps(key, sort_keys=True, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise KeySerializationError(
            "Query key is not JSON-representable",
            {"key": repr(key), "error": str(exc)}
        ) from exc


def parse_key(serialized: str) -> Any:
    """Parse a serialized key back into plain JSON values."""
    return json.loads(serialized)


def deep_equal(a: Any, b: Any) -> bool:
    """Structural equality for key segments.

    Lists compare element-wise, objects by key set and recursively equal
    values. Booleans never equal numbers.
    """
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        if len(a) != len(b):
            return False
        return all(deep_equal(x, y) for x, y in zip(a, b))
    if isinstance(a, dict) and isinstance(b, dict):
        if a.keys() != b.keys():
            return False
        return all(deep_equal(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple, dict)) or isinstance(b, (list, tuple, dict)):
        return False
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return a == b
    return type(a) is type(b) and a == b


def match_key(serialized: str, partial_key: Optional[QueryKey]) -> bool:
    """Check whether a stored key matches a partial key.

    String partial keys require exact equality; sequence partial keys match
    as a structural prefix. Malformed input never raises, it just does not match.
    """
    if partial_key is None:
        return True
    try:
        key = parse_key(serialized)
        partial = parse_key(serialize_key(partial_key))
    except (ValueError, TypeError, KeySerializationError):
        return False

    if isinstance(partial, str):
        return isinstance(key, str) and key == partial
    if isinstance(partial, list) and isinstance(key, list):
        if len(partial) > len(key):
            return False
        return all(deep_equal(key[i], segment) for i, segment in enumerate(partial))
    return False
