"""
Backing stores for the event chain.

The hash linkage and verification live in EventChain; a backend only
keeps events in append order. Swapping memory for SQLite changes
durability, not the algorithm.
"""

import json
from typing import List

from .db import SqliteDatabase
from .models import MerkleEvent


class ChainBackend:
    def load(self) -> List[MerkleEvent]:
        """All events in append order."""
        raise NotImplementedError

    def append(self, event: MerkleEvent) -> None:
        raise NotImplementedError

    def replace(self, events: List[MerkleEvent]) -> None:
        """Atomically swap the whole chain (used by import)."""
        raise NotImplementedError


class InMemoryChainBackend(ChainBackend):
    def __init__(self):
        self.events: List[MerkleEvent] = []

    def load(self) -> List[MerkleEvent]:
        return self.events

    def append(self, event: MerkleEvent) -> None:
        self.events.append(event)

    def replace(self, events: List[MerkleEvent]) -> None:
        self.events = list(events)


class SqliteChainBackend(ChainBackend):
    """Durable chain in the merkle_events table; seq gives the append order."""

    def __init__(self, db: SqliteDatabase):
        self._db = db

    def load(self) -> List[MerkleEvent]:
        with self._db.transaction() as conn:
            cur = conn.execute(
                "SELECT event_id, event_type, timestamp, payload_json, previous_hash, current_hash "
                "FROM merkle_events ORDER BY seq ASC"
            )
            rows = cur.fetchall()
        return [
            MerkleEvent.from_dict({
                "event_id": r["event_id"],
                "event_type": r["event_type"],
                "timestamp": r["timestamp"],
                "payload": json.loads(r["payload_json"]),
                "previous_hash": r["previous_hash"],
                "current_hash": r["current_hash"],
            })
            for r in rows
        ]

    def append(self, event: MerkleEvent) -> None:
        with self._db.transaction() as conn:
            self._insert(conn, event)

    def replace(self, events: List[MerkleEvent]) -> None:
        with self._db.transaction() as conn:
            conn.execute("DELETE FROM merkle_events")
            for event in events:
                self._insert(conn, event)

    @staticmethod
    def _insert(conn, event: MerkleEvent) -> None:
        conn.execute(
            "INSERT INTO merkle_events(event_id, event_type, timestamp, payload_json, previous_hash, current_hash) "
            "VALUES(?,?,?,?,?,?)",
            (event.event_id, event.event_type.value, event.timestamp,
             json.dumps(event.payload, sort_keys=True), event.previous_hash, event.current_hash),
        )
