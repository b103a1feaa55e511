"""
Domain records for the integrity core.

Every record has a snake_case wire form via to_dict()/from_dict(). The wire
form of an AggregateRecord is exactly what gets canonicalized and signed.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .config import AGGREGATE_VERSION
from .errors import InvalidArgument


class EventType(str, Enum):
    """Domain events recorded on the chain."""
    SIGNAL_SUBMITTED = "signal_submitted"
    SIGNAL_VALIDATED = "signal_validated"
    AGGREGATE_UPDATED = "aggregate_updated"
    SNAPSHOT_CREATED = "snapshot_created"


def _require(data: Dict[str, Any], key: str) -> Any:
    if not isinstance(data, dict):
        raise InvalidArgument(f"Expected an object, got {type(data).__name__}")
    if key not in data or data[key] is None:
        raise InvalidArgument(f"Missing required field: {key}")
    return data[key]


def _require_str(data: Dict[str, Any], key: str) -> str:
    value = _require(data, key)
    if not isinstance(value, str):
        raise InvalidArgument(f"Field {key} must be a string")
    return value


def _require_number(data: Dict[str, Any], key: str) -> float:
    value = _require(data, key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidArgument(f"Field {key} must be a number")
    if math.isnan(value) or math.isinf(value):
        raise InvalidArgument(f"Field {key} must be finite")
    return float(value)


@dataclass(frozen=True)
class AggregateRecord:
    """
    One group's summary statistics for one calendar day.

    Frozen: a corrected aggregate is a new record with a new version,
    never an edit of a signed one.
    """
    group_id: str
    date: str
    n: int
    avg_value: float
    ci_lower: float
    ci_upper: float
    version: str = AGGREGATE_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group_id": self.group_id,
            "date": self.date,
            "n": self.n,
            "avg_value": self.avg_value,
            "ci_lower": self.ci_lower,
            "ci_upper": self.ci_upper,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AggregateRecord":
        n = _require(data, "n")
        if isinstance(n, bool) or not isinstance(n, int) or n < 0:
            raise InvalidArgument("Field n must be a non-negative integer")
        return cls(
            group_id=_require_str(data, "group_id"),
            date=_require_str(data, "date"),
            n=n,
            avg_value=_require_number(data, "avg_value"),
            ci_lower=_require_number(data, "ci_lower"),
            ci_upper=_require_number(data, "ci_upper"),
            version=str(data.get("version", AGGREGATE_VERSION)),
        )


@dataclass(frozen=True)
class DataSignature:
    """Attestation attached to exactly one AggregateRecord."""
    signature: str
    public_key: str
    timestamp: str
    content_hash: str
    algorithm: str = "Ed25519"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signature": self.signature,
            "public_key": self.public_key,
            "timestamp": self.timestamp,
            "content_hash": self.content_hash,
            "algorithm": self.algorithm,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataSignature":
        return cls(
            signature=_require_str(data, "signature"),
            public_key=_require_str(data, "public_key"),
            timestamp=_require_str(data, "timestamp"),
            content_hash=_require_str(data, "content_hash"),
            algorithm=_require_str(data, "algorithm"),
        )


@dataclass(frozen=True)
class SignedAggregate:
    """An AggregateRecord together with its signature."""
    record: AggregateRecord
    signature: DataSignature

    @property
    def group_id(self) -> str:
        return self.record.group_id

    @property
    def date(self) -> str:
        return self.record.date

    def to_dict(self) -> Dict[str, Any]:
        d = self.record.to_dict()
        d["signature"] = self.signature.to_dict()
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignedAggregate":
        body = dict(data)
        sig = body.pop("signature", None)
        if not isinstance(sig, dict):
            raise InvalidArgument("Missing required field: signature")
        return cls(record=AggregateRecord.from_dict(body), signature=DataSignature.from_dict(sig))


@dataclass
class MerkleEvent:
    """One entry of the event chain."""
    event_id: str
    event_type: EventType
    timestamp: str
    payload: Dict[str, Any]
    previous_hash: str
    current_hash: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "payload": self.payload,
            "previous_hash": self.previous_hash,
            "current_hash": self.current_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MerkleEvent":
        raw_type = _require_str(data, "event_type")
        try:
            event_type = EventType(raw_type)
        except ValueError as e:
            raise InvalidArgument(f"Unknown event type: {raw_type}") from e
        payload = _require(data, "payload")
        if not isinstance(payload, dict):
            raise InvalidArgument("Field payload must be an object")
        previous_hash = data.get("previous_hash")
        if not isinstance(previous_hash, str):
            raise InvalidArgument("Field previous_hash must be a string")
        return cls(
            event_id=_require_str(data, "event_id"),
            event_type=event_type,
            timestamp=_require_str(data, "timestamp"),
            payload=payload,
            previous_hash=previous_hash,
            current_hash=_require_str(data, "current_hash"),
        )


@dataclass(frozen=True)
class SubmissionRow:
    """One respondent's raw signal as read from the submission store."""
    group_id: str
    sub_score_a: float
    sub_score_b: float
    created_at: Union[datetime, str, None] = None


@dataclass
class ChainVerification:
    """Outcome of walking the whole chain. Never raised, always returned."""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    first_invalid_index: Optional[int] = None
    total_events: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "first_invalid_index": self.first_invalid_index,
            "total_events": self.total_events,
        }


@dataclass
class ImportResult:
    success: bool
    events_imported: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {"success": self.success, "events_imported": self.events_imported}
        if self.error:
            d["error"] = self.error
        return d


@dataclass
class BatchVerification:
    """Result of re-verifying a batch of signed aggregates."""
    all_valid: bool
    valid_count: int
    total_count: int
    invalid: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "all_valid": self.all_valid,
            "valid_count": self.valid_count,
            "total_count": self.total_count,
            "invalid": list(self.invalid),
        }
