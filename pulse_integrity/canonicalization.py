"""
Canonical JSON encoding.

This canonical form is the only thing ever hashed or signed. It has to come
out byte-identical from any implementation that follows the same rules, so
auditors can recompute hashes with their own tooling:

- Object keys sorted by Unicode code point, at every level
- Arrays keep their order
- No whitespace between tokens
- Strings use plain JSON escaping, non-ASCII left as UTF-8
- Numbers in minimal decimal form (2.0 -> 2, 1e-07 -> 1e-7)
- NaN and Infinity are rejected
- Nesting is limited to MAX_DEPTH levels
"""

import json
import math
from decimal import Decimal
from typing import Any, Dict, List, Union

from .errors import InvalidArgument

MAX_DEPTH = 64


def canonicalize(obj: Any) -> bytes:
    """
    Convert an object to canonical JSON.

    Returns:
        UTF-8 encoded bytes of canonical JSON
    """
    return canonicalize_str(obj).encode("utf-8")


def canonicalize_str(obj: Any) -> str:
    """Return canonical JSON as string."""
    return _encode_value(obj)


def _encode_value(value: Any, depth: int = 0) -> str:
    if value is None:
        return "null"
    elif isinstance(value, bool):
        return "true" if value else "false"
    elif isinstance(value, int):
        return str(value)
    elif isinstance(value, float):
        return _encode_number(value)
    elif isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    elif depth >= MAX_DEPTH:
        raise InvalidArgument(f"Nesting deeper than {MAX_DEPTH} levels")
    elif isinstance(value, dict):
        return _encode_object(value, depth + 1)
    elif isinstance(value, (list, tuple)):
        return _encode_array(value, depth + 1)
    else:
        raise InvalidArgument(f"Cannot canonicalize type: {type(value).__name__}")


def _encode_number(value: float) -> str:
    """
    Shortest round-trip decimal for a float.

    Integral values drop the fractional part and exponents lose their
    zero padding, matching what ECMAScript's number-to-string produces.
    """
    if math.isnan(value) or math.isinf(value):
        raise InvalidArgument("NaN and Infinity have no canonical JSON form")
    if value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    text = repr(value)
    if "e" in text:
        mantissa, exponent = text.split("e")
        if -7 < int(exponent) < 21:
            return format(Decimal(text), "f")
        sign = "-" if exponent.startswith("-") else "+"
        text = f"{mantissa}e{sign}{exponent.lstrip('+-').lstrip('0') or '0'}"
    return text


def _encode_object(obj: Dict[str, Any], depth: int) -> str:
    for key in obj:
        if not isinstance(key, str):
            raise InvalidArgument(f"Object keys must be strings, got {type(key).__name__}")
    members = [
        f"{json.dumps(key, ensure_ascii=False)}:{_encode_value(obj[key], depth)}"
        for key in sorted(obj)
    ]
    return "{" + ",".join(members) + "}"


def _encode_array(arr: Union[List, tuple], depth: int) -> str:
    return "[" + ",".join(_encode_value(item, depth) for item in arr) + "]"
