"""
Key management for aggregate signing.

Provides the Ed25519 key pair type and key providers. Secret material
always comes from an injected source (a key file mounted by a secrets
manager, or an explicit KeyPair); nothing here derives a key from a
constant string or an environment default.
"""

import json
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from nacl.exceptions import CryptoError
from nacl.signing import SigningKey

from .errors import SigningError
from .hashing import sha256_hex

SEED_LENGTH = 32
PUBLIC_KEY_LENGTH = 32


@dataclass(frozen=True)
class KeyPair:
    """
    Ed25519 key pair.

    signing_key holds the 32-byte seed; verify_key the 32-byte public key.
    """
    key_id: str
    signing_key: bytes
    verify_key: bytes
    algorithm: str = "Ed25519"

    def __repr__(self) -> str:
        return f"KeyPair(key_id={self.key_id!r}, public_key={self.public_key_hex!r})"

    @property
    def public_key_hex(self) -> str:
        return self.verify_key.hex()

    @property
    def fingerprint(self) -> str:
        """Short identifier announced alongside the public key on rotation."""
        return fingerprint(self.verify_key)

    def validate(self) -> None:
        """
        Check the pair is well formed and both halves belong together.

        Raises:
            SigningError: wrong lengths or mismatched halves
        """
        if not isinstance(self.signing_key, bytes) or len(self.signing_key) != SEED_LENGTH:
            raise SigningError(f"Signing key must be {SEED_LENGTH} bytes")
        if not isinstance(self.verify_key, bytes) or len(self.verify_key) != PUBLIC_KEY_LENGTH:
            raise SigningError(f"Verify key must be {PUBLIC_KEY_LENGTH} bytes")
        try:
            derived = bytes(SigningKey(self.signing_key).verify_key)
        except CryptoError as e:
            raise SigningError(f"Invalid signing key: {e}") from e
        if derived != self.verify_key:
            raise SigningError("Verify key does not match signing key")

    @classmethod
    def generate(cls, key_id: str = "aggregate-signing-01") -> "KeyPair":
        """Generate a fresh key pair from the OS CSPRNG."""
        sk = SigningKey.generate()
        return cls(key_id=key_id, signing_key=bytes(sk), verify_key=bytes(sk.verify_key))

    @classmethod
    def from_secret_hex(cls, secret_hex: str, key_id: str = "aggregate-signing-01") -> "KeyPair":
        """
        Rebuild a key pair from a hex-encoded seed.

        Raises:
            SigningError: not hex, or not 32 bytes
        """
        try:
            seed = bytes.fromhex(secret_hex)
        except (TypeError, ValueError) as e:
            raise SigningError("Secret key is not valid hex") from e
        if len(seed) != SEED_LENGTH:
            raise SigningError(f"Secret key must be {SEED_LENGTH} bytes, got {len(seed)}")
        sk = SigningKey(seed)
        return cls(key_id=key_id, signing_key=seed, verify_key=bytes(sk.verify_key))

    def public_info(self) -> Dict[str, Any]:
        """Everything an external verifier needs. Never includes the secret half."""
        return {
            "key_id": self.key_id,
            "algorithm": self.algorithm,
            "public_key": self.public_key_hex,
            "fingerprint": self.fingerprint,
        }


def fingerprint(verify_key: bytes) -> str:
    """First 16 hex characters of SHA-256 over the raw public key."""
    return sha256_hex(verify_key)[:16]


class KeyProvider(ABC):
    """Abstract source of the signing key pair."""

    @abstractmethod
    def get_key_pair(self) -> KeyPair:
        """
        Return the key pair used for signing.

        Raises:
            SigningError: the key is unavailable or malformed
        """
        pass


class FileKeyProvider(KeyProvider):
    """
    File-based key provider reading a JSON key file.

    The file holds {"kid": ..., "private_key_hex": ...} and is expected to be
    mounted by a secrets manager with owner-only permissions. Loaded once,
    then cached for the provider's lifetime.
    """

    def __init__(self, signing_key_path: str):
        self._signing_key_path = signing_key_path
        self._lock = threading.RLock()
        self._key_pair: Optional[KeyPair] = None

    def get_key_pair(self) -> KeyPair:
        with self._lock:
            if self._key_pair is None:
                self._key_pair = self._load()
            return self._key_pair

    def _load(self) -> KeyPair:
        try:
            with open(self._signing_key_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError as e:
            raise SigningError(f"Signing key file not found: {self._signing_key_path}") from e
        except (OSError, json.JSONDecodeError) as e:
            raise SigningError(f"Cannot read signing key file: {e}") from e

        if not isinstance(raw, dict) or "private_key_hex" not in raw:
            raise SigningError("Signing key file missing private_key_hex")
        key_pair = KeyPair.from_secret_hex(raw["private_key_hex"], key_id=raw.get("kid", "aggregate-signing-01"))
        key_pair.validate()
        return key_pair


def write_key_file(key_pair: KeyPair, path: str) -> None:
    """Write a key pair as a JSON key file readable only by its owner."""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump({"kid": key_pair.key_id, "private_key_hex": key_pair.signing_key.hex()}, f, indent=2)
