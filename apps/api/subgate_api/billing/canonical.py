"""Canonical string form of a flat notification payload.

Digest-signing providers (ZainCash, FIB) sign the payload fields, not the
raw body: keys sorted, rendered as ``key=value`` and joined with ``&``.
Signature fields must be removed by the caller before canonicalizing.
"""

import json
from typing import Any, Mapping


def render_value(value: Any) -> str:
    """Render one field value the way the providers' signers do.

    None -> "null", booleans -> "true"/"false", integral floats lose the
    trailing ".0", nested objects and arrays become compact JSON.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return str(value)


def canonicalize(fields: Mapping[str, Any]) -> str:
    """Deterministic ``k1=v1&k2=v2`` rendering, keys in byte-wise order.

    >>> canonicalize({"b": 2, "a": 1})
    'a=1&b=2'
    """
    ordered = sorted(fields.keys(), key=lambda k: str(k).encode("utf-8"))
    return "&".join(f"{key}={render_value(fields[key])}" for key in ordered)


def without_fields(fields: Mapping[str, Any], excluded: tuple[str, ...]) -> dict[str, Any]:
    """Copy of fields minus the excluded keys (signature fields)."""
    return {k: v for k, v in fields.items() if k not in excluded}
