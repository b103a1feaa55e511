"""
Hash-chained event log.

Each event commits to its own type, timestamp and payload and to the
current_hash of the event before it:

    event_data_hash = SHA-256(canonicalize({event_type, timestamp, payload}))
    current_hash    = SHA-256(previous_hash + event_data_hash)

The first event has previous_hash "". The chain attests to the sequence of
operations, complementing the signer which attests to a point-in-time
aggregate.

The chain has a single writer. append() holds the instance lock so
appends from threads of one process are serialized; separate processes
sharing a durable backend must funnel appends through one owner.
"""

import copy
import json
import logging
import threading
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from .aggregation import CompositeFormula
from .canonicalization import canonicalize
from .chain_backends import ChainBackend, InMemoryChainBackend
from .config import CHAIN_EXPORT_VERSION
from .errors import InvalidArgument
from .hashing import chain_entry_hash, sha256_hex
from .logging_config import audit_log
from .models import ChainVerification, EventType, ImportResult, MerkleEvent
from .util import iso_timestamp, utc_now

logger = logging.getLogger(__name__)

EVENT_ID_LENGTH = 16


def event_data_hash(event_type: Union[EventType, str], timestamp: str, payload: Dict[str, Any]) -> str:
    """Hash of an event's own content, independent of its position."""
    type_value = event_type.value if isinstance(event_type, EventType) else event_type
    return sha256_hex(canonicalize({"event_type": type_value, "timestamp": timestamp, "payload": payload}))


def expected_current_hash(event: MerkleEvent) -> str:
    return chain_entry_hash(event.previous_hash, event_data_hash(event.event_type, event.timestamp, event.payload))


def verify_events(events: List[MerkleEvent]) -> ChainVerification:
    """
    Walk a list of events from index 0 and report every mismatch.

    Content and linkage are checked separately so a single corrupted entry
    can be told apart from a broken sequence.
    """
    errors: List[str] = []
    first_invalid: Optional[int] = None

    def flag(index: int, message: str) -> None:
        nonlocal first_invalid
        errors.append(message)
        if first_invalid is None:
            first_invalid = index

    for i, event in enumerate(events):
        try:
            expected = expected_current_hash(event)
        except (InvalidArgument, AttributeError, TypeError) as e:
            flag(i, f"Event {i} cannot be hashed: {e}")
            continue

        if event.current_hash != expected:
            flag(i, f"Event {i} hash mismatch. Expected: {expected}, Got: {event.current_hash}")

        if event.event_id != event.current_hash[:EVENT_ID_LENGTH]:
            flag(i, f"Event {i} id {event.event_id!r} does not match its hash")

        if i == 0:
            if event.previous_hash != "":
                flag(i, f"First event should have empty previous hash. Got: {event.previous_hash}")
        elif event.previous_hash != events[i - 1].current_hash:
            flag(i, f"Event {i} linkage broken. Previous hash doesn't match.")

    return ChainVerification(
        is_valid=not errors,
        errors=errors,
        first_invalid_index=first_invalid,
        total_events=len(events),
    )


class EventChain:
    """
    Append-only, hash-linked log of domain events.

    Construct one per log and inject it; there is no module-level instance.
    """

    def __init__(self, backend: Optional[ChainBackend] = None, clock: Optional[Callable[[], datetime]] = None):
        self._backend = backend or InMemoryChainBackend()
        self._clock = clock or utc_now
        self._lock = threading.RLock()
        self._events: List[MerkleEvent] = list(self._backend.load())
        self._root_hash = self._events[-1].current_hash if self._events else ""

    @property
    def root_hash(self) -> str:
        """current_hash of the most recent event, "" when empty."""
        return self._root_hash

    @property
    def length(self) -> int:
        return len(self._events)

    def __len__(self) -> int:
        return len(self._events)

    @property
    def events(self) -> List[MerkleEvent]:
        """Copy of the event list (the events themselves are shared)."""
        return list(self._events)

    def append(self, event_type: Union[EventType, str], payload: Dict[str, Any]) -> MerkleEvent:
        """
        Append one event and advance the root hash.

        Raises:
            InvalidArgument: unknown event type, or payload not canonicalizable
        """
        try:
            event_type = EventType(event_type)
        except ValueError as e:
            raise InvalidArgument(f"Unknown event type: {event_type}") from e
        if not isinstance(payload, dict):
            raise InvalidArgument("Event payload must be an object")
        # Detached from the caller's dict so later edits cannot alter a logged event
        payload = copy.deepcopy(payload)

        with self._lock:
            timestamp = iso_timestamp(self._clock())
            previous_hash = self._root_hash
            current_hash = chain_entry_hash(previous_hash, event_data_hash(event_type, timestamp, payload))

            event = MerkleEvent(
                event_id=current_hash[:EVENT_ID_LENGTH],
                event_type=event_type,
                timestamp=timestamp,
                payload=payload,
                previous_hash=previous_hash,
                current_hash=current_hash,
            )
            self._backend.append(event)
            self._events.append(event)
            self._root_hash = current_hash

        logger.debug("Appended %s event %s", event_type.value, event.event_id)
        return event

    def verify_chain(self) -> ChainVerification:
        """Recompute every hash and link. Never raises."""
        with self._lock:
            result = verify_events(self._events)
        audit_log.chain_verified(result.is_valid, result.total_events, result.first_invalid_index, len(result.errors))
        return result

    def audit_trail(self, event_id: str) -> Optional[MerkleEvent]:
        """Point lookup by event id."""
        for event in self._events:
            if event.event_id == event_id:
                return event
        return None

    def recent_events(self, limit: int = 100) -> List[MerkleEvent]:
        """Newest first."""
        if limit <= 0:
            return []
        return list(reversed(self._events[-limit:]))

    def stats(self) -> Dict[str, Any]:
        counts = Counter(event.event_type.value for event in self._events)
        return {
            "total_events": len(self._events),
            "root_hash": self._root_hash,
            "first_event_date": self._events[0].timestamp if self._events else None,
            "last_event_date": self._events[-1].timestamp if self._events else None,
            "event_types": dict(counts),
        }

    # ============================================================
    # Export / import
    # ============================================================

    def export(self) -> str:
        """Serialize the whole chain for backup or transfer."""
        with self._lock:
            data = {
                "version": CHAIN_EXPORT_VERSION,
                "root_hash": self._root_hash,
                "length": len(self._events),
                "events": [event.to_dict() for event in self._events],
                "exported_at": iso_timestamp(self._clock()),
            }
        return json.dumps(data, indent=2, ensure_ascii=False)

    def import_chain(self, serialized: str) -> ImportResult:
        """
        Replace the chain with an exported one, all or nothing.

        The candidate is parsed and verified before any state is touched; a
        corrupt or inconsistent export leaves the current chain as it was.
        """
        try:
            data = json.loads(serialized)
        except (TypeError, ValueError, RecursionError) as e:
            return self._reject(f"Invalid JSON: {e}")

        if not isinstance(data, dict):
            return self._reject("Invalid chain format: expected an object")
        if data.get("version") != CHAIN_EXPORT_VERSION:
            return self._reject(f"Unsupported chain version: {data.get('version')!r}")
        raw_events = data.get("events")
        if not isinstance(raw_events, list):
            return self._reject("Invalid chain format: missing events array")

        try:
            candidate = [MerkleEvent.from_dict(raw) for raw in raw_events]
        except InvalidArgument as e:
            return self._reject(f"Invalid event: {e}")

        verification = verify_events(candidate)
        if not verification.is_valid:
            return self._reject(f"Chain verification failed: {', '.join(verification.errors)}")

        expected_root = candidate[-1].current_hash if candidate else ""
        if data.get("root_hash") != expected_root:
            return self._reject("Root hash does not match last event")
        if "length" in data and data["length"] != len(candidate):
            return self._reject("Declared length does not match event count")

        with self._lock:
            self._backend.replace(candidate)
            self._events = list(candidate)
            self._root_hash = expected_root

        logger.info("Imported chain with %d events", len(candidate))
        return ImportResult(success=True, events_imported=len(candidate))

    def _reject(self, error: str) -> ImportResult:
        audit_log.chain_import_rejected(error)
        return ImportResult(success=False, events_imported=0, error=error)

    # ============================================================
    # Convenience loggers
    # ============================================================

    def log_signal_submission(
        self,
        signal_id: str,
        group_id: str,
        sub_score_a: float,
        sub_score_b: float,
        formula: Optional[CompositeFormula] = None,
    ) -> MerkleEvent:
        """Record one respondent's signal together with its composite score."""
        formula = formula or CompositeFormula()
        return self.append(EventType.SIGNAL_SUBMITTED, {
            "signal_id": signal_id,
            "group_id": group_id,
            "sub_score_a": sub_score_a,
            "sub_score_b": sub_score_b,
            "score": formula.score(sub_score_a, sub_score_b),
        })

    def log_aggregate_update(self, group_id: str, day: str, n: int, avg_value: float, **extra: Any) -> MerkleEvent:
        payload = {"group_id": group_id, "date": day, "n": n, "avg_value": avg_value}
        payload.update(extra)
        return self.append(EventType.AGGREGATE_UPDATED, payload)
