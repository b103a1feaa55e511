"""
Hashing for aggregates and chain events.

All hashes are SHA-256 rendered as lowercase hexadecimal, without prefix.
"""

import hashlib
import hmac
from typing import Any, Optional, Union

from .canonicalization import canonicalize


def sha256_hex(data: Union[bytes, str]) -> str:
    """Compute SHA-256 hash and return as hex string."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def content_hash(obj: Any) -> str:
    """
    Hash the canonical form of an object.

    content_hash = SHA-256(canonicalize(obj))
    """
    return sha256_hex(canonicalize(obj))


def chain_entry_hash(previous_hash: Optional[str], event_data_hash: str) -> str:
    """
    Compute the hash linking an event to its predecessor.

    Args:
        previous_hash: current_hash of the prior event ("" or None for the first)
        event_data_hash: Hash of the event's canonical type/timestamp/payload

    Returns:
        SHA-256 of the concatenated hex strings
    """
    return sha256_hex((previous_hash or "") + event_data_hash)


def hashes_equal(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """Compare two digests in constant time."""
    if isinstance(a, str):
        a = a.encode("utf-8")
    if isinstance(b, str):
        b = b.encode("utf-8")
    return hmac.compare_digest(a, b)


def is_hex_digest(value: Any, length: int = 64) -> bool:
    """True if value is a lowercase hex string of the given length."""
    if not isinstance(value, str) or len(value) != length:
        return False
    try:
        int(value, 16)
    except ValueError:
        return False
    return value == value.lower()
