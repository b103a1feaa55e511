"""
Ed25519 attestation of daily aggregates.

The content hash of the canonical record is signed with the secret half of
an injected key pair; anyone holding only the public key can verify it.
Verification is meant to run on untrusted, attacker-supplied records, so it
never raises: every malformed input is simply "not verified".
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional, Union

from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import SigningKey, VerifyKey

from .errors import InvalidArgument, SigningError
from .hashing import content_hash, hashes_equal, is_hex_digest
from .keys import KeyPair
from .models import AggregateRecord, BatchVerification, DataSignature, SignedAggregate
from .util import iso_timestamp, utc_now

logger = logging.getLogger(__name__)

ALGORITHM = "Ed25519"

RecordLike = Union[AggregateRecord, Dict[str, Any]]
SignatureLike = Union[DataSignature, Dict[str, Any]]


def _record_body(record: RecordLike) -> Dict[str, Any]:
    """The signable body: the record's wire form without any signature."""
    if isinstance(record, AggregateRecord):
        return record.to_dict()
    if isinstance(record, dict):
        body = dict(record)
        body.pop("signature", None)
        return body
    raise InvalidArgument(f"Cannot sign object of type {type(record).__name__}")


class AggregateSigner:
    """
    Signs aggregates with an injected Ed25519 key pair.

    One signer per key lifetime; construct it explicitly and pass it where it
    is needed. A signer built without a key pair can still verify, but sign()
    raises SigningError.
    """

    def __init__(self, key_pair: Optional[KeyPair], clock: Optional[Callable[[], datetime]] = None):
        self._key_pair = key_pair
        self._clock = clock or utc_now
        self._signing_key: Optional[SigningKey] = None

    @property
    def key_pair(self) -> Optional[KeyPair]:
        return self._key_pair

    @property
    def public_key(self) -> str:
        """Hex public key published for external verifiers."""
        if self._key_pair is None:
            raise SigningError("No key pair configured")
        return self._key_pair.public_key_hex

    def _get_signing_key(self) -> SigningKey:
        if self._signing_key is None:
            if self._key_pair is None:
                raise SigningError("No key pair configured")
            if not isinstance(self._key_pair, KeyPair):
                raise SigningError(f"Malformed key pair: {type(self._key_pair).__name__}")
            self._key_pair.validate()
            self._signing_key = SigningKey(self._key_pair.signing_key)
        return self._signing_key

    def sign(self, record: RecordLike) -> DataSignature:
        """
        Sign a record.

        content_hash = SHA-256(canonicalize(record)); the signature covers
        the UTF-8 bytes of content_hash.

        Raises:
            SigningError: key pair absent or malformed
            InvalidArgument: record cannot be canonicalized
        """
        signing_key = self._get_signing_key()
        digest = content_hash(_record_body(record))
        signed = signing_key.sign(digest.encode("utf-8"))

        return DataSignature(
            signature=signed.signature.hex(),
            public_key=self._key_pair.public_key_hex,
            timestamp=iso_timestamp(self._clock()),
            content_hash=digest,
            algorithm=ALGORITHM,
        )

    def sign_aggregate(self, record: AggregateRecord) -> SignedAggregate:
        return SignedAggregate(record=record, signature=self.sign(record))

    def export_public_key(self) -> Dict[str, Any]:
        """Public key bundle for the transparency page."""
        if self._key_pair is None:
            raise SigningError("No key pair configured")
        info = self._key_pair.public_info()
        info["exported_at"] = iso_timestamp(self._clock())
        return info

    @staticmethod
    def verify(
        record: RecordLike,
        signature: SignatureLike,
        expected_public_key: Optional[str] = None,
    ) -> bool:
        """
        Verify a record against its signature.

        Both checks are mandatory: the recomputed content hash must equal
        signature.content_hash, and the Ed25519 signature must validate
        against signature.public_key. When expected_public_key is given the
        signature must also come from that key.

        Returns:
            True only if every check passes; False for any malformed input
        """
        try:
            sig = signature if isinstance(signature, DataSignature) else DataSignature.from_dict(signature)
            if sig.algorithm != ALGORITHM:
                return False
            if not is_hex_digest(sig.content_hash):
                return False
            if expected_public_key is not None and not hashes_equal(sig.public_key, expected_public_key):
                return False

            expected_hash = content_hash(_record_body(record))
            if not hashes_equal(expected_hash, sig.content_hash):
                logger.warning("Content hash mismatch")
                return False

            verify_key = VerifyKey(bytes.fromhex(sig.public_key))
            verify_key.verify(expected_hash.encode("utf-8"), bytes.fromhex(sig.signature))
            return True
        except BadSignatureError:
            logger.warning("Signature does not validate against public key")
            return False
        except (CryptoError, InvalidArgument, ValueError, TypeError, AttributeError):
            return False

    @classmethod
    def verify_signed_aggregate(
        cls,
        signed: Union[SignedAggregate, Dict[str, Any]],
        expected_public_key: Optional[str] = None,
    ) -> bool:
        """Verify a SignedAggregate or its wire form."""
        if isinstance(signed, SignedAggregate):
            return cls.verify(signed.record, signed.signature, expected_public_key)
        if not isinstance(signed, dict) or not isinstance(signed.get("signature"), dict):
            return False
        return cls.verify(signed, signed["signature"], expected_public_key)


def verify_all_signatures(
    signed_aggregates: Iterable[Union[SignedAggregate, Dict[str, Any]]],
    expected_public_key: Optional[str] = None,
) -> BatchVerification:
    """
    Re-verify a batch of signed aggregates, e.g. a published day.

    Returns:
        BatchVerification listing every record that failed
    """
    invalid = []
    valid_count = 0
    total = 0

    for signed in signed_aggregates:
        total += 1
        if AggregateSigner.verify_signed_aggregate(signed, expected_public_key):
            valid_count += 1
            continue
        if isinstance(signed, SignedAggregate):
            group_id, day = signed.group_id, signed.date
        elif isinstance(signed, dict):
            group_id, day = str(signed.get("group_id")), str(signed.get("date"))
        else:
            group_id, day = "unknown", "unknown"
        invalid.append({"group_id": group_id, "date": day, "error": "Signature verification failed"})

    return BatchVerification(
        all_valid=not invalid,
        valid_count=valid_count,
        total_count=total,
        invalid=invalid,
    )
