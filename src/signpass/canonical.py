"""
Canonical JSON serialization for manifests and signature envelopes.

The signature engine signs these exact bytes, so the same logical value
must always serialize to the same byte sequence.

Rules (a subset of RFC 8785 / JCS):
- Object keys sorted lexicographically by Unicode code point
- No whitespace between tokens
- Strings: minimal escaping, non-ASCII emitted as UTF-8
- Integers only; floats are rejected since no signpass document needs them
- null, true, false as literals
"""

import json
from typing import Any


def canonical_json(value: Any) -> str:
    """
    Serialize a value to canonical JSON.

    Args:
        value: dict, list, tuple, str, int, bool or None (nested)

    Returns:
        Canonical JSON string with sorted keys and no whitespace

    Raises:
        TypeError: If the value contains an unsupported type
    """
    return _serialize_value(value)


def canonical_bytes(value: Any) -> bytes:
    """Canonical JSON encoded as UTF-8."""
    return canonical_json(value).encode("utf-8")


def _serialize_value(value: Any) -> str:
    if value is None:
        return "null"

    # bool is a subclass of int
    if isinstance(value, bool):
        return "true" if value else "false"

    if isinstance(value, int):
        return str(value)

    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)

    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_serialize_value(item) for item in value) + "]"

    if isinstance(value, dict):
        return _serialize_object(value)

    raise TypeError(f"Cannot canonicalize value of type {type(value).__name__}")


def _serialize_object(obj: dict) -> str:
    pairs = []
    for key in sorted(obj.keys()):
        if not isinstance(key, str):
            raise TypeError(f"Object keys must be strings, got {type(key).__name__}")
        pairs.append(json.dumps(key, ensure_ascii=False) + ":" + _serialize_value(obj[key]))
    return "{" + ",".join(pairs) + "}"
