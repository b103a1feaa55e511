"""
Hash-chained event log: append, verification, tamper detection and
all-or-nothing import.
"""

import json
import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone

from pulse_integrity.chain import EventChain, event_data_hash, verify_events
from pulse_integrity.chain_backends import InMemoryChainBackend, SqliteChainBackend
from pulse_integrity.db import SqliteDatabase
from pulse_integrity.errors import InvalidArgument
from pulse_integrity.hashing import chain_entry_hash
from pulse_integrity.models import EventType


class StepClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self):
        self.now = datetime(2025, 1, 11, 2, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


def populated_chain(backend=None):
    chain = EventChain(backend or InMemoryChainBackend(), clock=StepClock())
    chain.log_signal_submission("sig-1", "edmonton", 7, 3)
    chain.log_aggregate_update("edmonton", "2025-01-10", 25, 70.4)
    chain.append(EventType.SNAPSHOT_CREATED, {"date": "2025-01-10", "signature_ids": ["2025-01-10_edmonton"]})
    return chain


class TestAppend(unittest.TestCase):

    def test_empty_chain(self):
        chain = EventChain()
        self.assertEqual(chain.root_hash, "")
        self.assertEqual(len(chain), 0)
        self.assertTrue(chain.verify_chain().is_valid)

    def test_first_event_links_to_empty(self):
        chain = EventChain(clock=StepClock())
        event = chain.append(EventType.SIGNAL_VALIDATED, {"signal_id": "sig-1"})
        self.assertEqual(event.previous_hash, "")
        expected = chain_entry_hash("", event_data_hash(EventType.SIGNAL_VALIDATED, event.timestamp, event.payload))
        self.assertEqual(event.current_hash, expected)
        self.assertEqual(event.event_id, event.current_hash[:16])
        self.assertEqual(chain.root_hash, event.current_hash)

    def test_events_link(self):
        chain = populated_chain()
        events = chain.events
        self.assertEqual(chain.length, 3)
        for prev, cur in zip(events, events[1:]):
            self.assertEqual(cur.previous_hash, prev.current_hash)
        self.assertEqual(chain.root_hash, events[-1].current_hash)

    def test_signal_submission_carries_score(self):
        event = populated_chain().events[0]
        self.assertEqual(event.event_type, EventType.SIGNAL_SUBMITTED)
        self.assertAlmostEqual(event.payload["score"], 10 * (0.4 * 7 + 0.6 * 7))

    def test_caller_edits_after_append_do_not_reach_chain(self):
        chain = EventChain(clock=StepClock())
        payload = {"group_id": "Edmonton 1", "n": 25, "signature_ids": ["a"]}
        event = chain.append(EventType.AGGREGATE_UPDATED, payload)

        payload["n"] = 99
        payload["signature_ids"].append("b")

        self.assertEqual(event.payload, {"group_id": "Edmonton 1", "n": 25, "signature_ids": ["a"]})
        self.assertTrue(chain.verify_chain().is_valid)

    def test_string_event_type(self):
        chain = EventChain()
        event = chain.append("aggregate_updated", {"group_id": "calgary"})
        self.assertEqual(event.event_type, EventType.AGGREGATE_UPDATED)

    def test_rejects_unknown_type_and_bad_payload(self):
        chain = EventChain()
        with self.assertRaises(InvalidArgument):
            chain.append("payment_sent", {})
        with self.assertRaises(InvalidArgument):
            chain.append(EventType.SIGNAL_SUBMITTED, ["not", "an", "object"])
        with self.assertRaises(InvalidArgument):
            chain.append(EventType.SIGNAL_SUBMITTED, {"score": float("nan")})
        self.assertEqual(len(chain), 0)
        self.assertEqual(chain.root_hash, "")


class TestVerification(unittest.TestCase):

    def test_valid_chain(self):
        result = populated_chain().verify_chain()
        self.assertTrue(result.is_valid)
        self.assertEqual(result.errors, [])
        self.assertIsNone(result.first_invalid_index)
        self.assertEqual(result.total_events, 3)

    def test_payload_tamper_detected_at_index(self):
        backend = InMemoryChainBackend()
        chain = populated_chain(backend)
        chain.events[1].payload["avg_value"] = 99.9

        result = chain.verify_chain()

        self.assertFalse(result.is_valid)
        self.assertEqual(result.first_invalid_index, 1)
        self.assertEqual(len(result.errors), 1)
        self.assertIn("hash mismatch", result.errors[0])

    def test_timestamp_tamper_detected(self):
        chain = populated_chain()
        chain.events[0].timestamp = "2024-12-31T00:00:00.000Z"
        result = chain.verify_chain()
        self.assertEqual(result.first_invalid_index, 0)

    def test_rewritten_hash_breaks_next_link(self):
        """Recomputing a tampered event's hash still breaks its successor."""
        chain = populated_chain()
        events = chain.events
        events[1].payload["n"] = 26
        events[1].current_hash = chain_entry_hash(
            events[1].previous_hash,
            event_data_hash(events[1].event_type, events[1].timestamp, events[1].payload),
        )
        events[1].event_id = events[1].current_hash[:16]

        result = chain.verify_chain()

        self.assertFalse(result.is_valid)
        self.assertEqual(result.first_invalid_index, 2)
        self.assertTrue(any("linkage" in e for e in result.errors))

    def test_reports_every_mismatch(self):
        chain = populated_chain()
        chain.events[0].payload["group_id"] = "calgary"
        chain.events[2].payload["date"] = "2025-01-09"
        result = chain.verify_chain()
        self.assertEqual(result.first_invalid_index, 0)
        self.assertEqual(len(result.errors), 2)

    def test_forged_event_id_detected(self):
        chain = populated_chain()
        chain.events[1].event_id = "deadbeefdeadbeef"
        result = chain.verify_chain()
        self.assertFalse(result.is_valid)
        self.assertEqual(result.first_invalid_index, 1)
        self.assertIn("does not match its hash", result.errors[0])

    def test_first_event_must_have_empty_previous(self):
        events = populated_chain().events
        events[0].previous_hash = "0" * 64
        result = verify_events(events)
        self.assertFalse(result.is_valid)
        self.assertEqual(result.first_invalid_index, 0)


class TestLookups(unittest.TestCase):

    def setUp(self):
        self.chain = populated_chain()

    def test_audit_trail(self):
        event = self.chain.events[1]
        self.assertIs(self.chain.audit_trail(event.event_id), event)
        self.assertIsNone(self.chain.audit_trail("0" * 16))

    def test_recent_events_newest_first(self):
        recent = self.chain.recent_events(2)
        self.assertEqual([e.event_type for e in recent],
                         [EventType.SNAPSHOT_CREATED, EventType.AGGREGATE_UPDATED])
        self.assertEqual(self.chain.recent_events(0), [])
        self.assertEqual(len(self.chain.recent_events(100)), 3)

    def test_stats(self):
        stats = self.chain.stats()
        self.assertEqual(stats["total_events"], 3)
        self.assertEqual(stats["root_hash"], self.chain.root_hash)
        self.assertEqual(stats["first_event_date"], "2025-01-11T02:00:01.000Z")
        self.assertEqual(stats["last_event_date"], "2025-01-11T02:00:03.000Z")
        self.assertEqual(stats["event_types"], {
            "signal_submitted": 1,
            "aggregate_updated": 1,
            "snapshot_created": 1,
        })

    def test_stats_empty(self):
        stats = EventChain().stats()
        self.assertEqual(stats["total_events"], 0)
        self.assertIsNone(stats["first_event_date"])


class TestExportImport(unittest.TestCase):

    def setUp(self):
        self.source = populated_chain()
        self.exported = self.source.export()

    def test_export_format(self):
        data = json.loads(self.exported)
        self.assertEqual(data["version"], "1.0")
        self.assertEqual(data["root_hash"], self.source.root_hash)
        self.assertEqual(data["length"], 3)
        self.assertEqual(len(data["events"]), 3)
        self.assertIn("exported_at", data)

    def test_import_round_trip(self):
        target = EventChain()
        result = target.import_chain(self.exported)
        self.assertTrue(result.success)
        self.assertEqual(result.events_imported, 3)
        self.assertEqual(target.root_hash, self.source.root_hash)
        self.assertTrue(target.verify_chain().is_valid)

    def test_import_then_append_continues_chain(self):
        target = EventChain()
        target.import_chain(self.exported)
        event = target.append(EventType.SIGNAL_VALIDATED, {"signal_id": "sig-2"})
        self.assertEqual(event.previous_hash, self.source.root_hash)
        self.assertTrue(target.verify_chain().is_valid)

    def _assert_rejected_unchanged(self, serialized):
        target = populated_chain()
        before_root, before_len = target.root_hash, len(target)
        result = target.import_chain(serialized)
        self.assertFalse(result.success)
        self.assertEqual(result.events_imported, 0)
        self.assertTrue(result.error)
        self.assertEqual(target.root_hash, before_root)
        self.assertEqual(len(target), before_len)
        return result

    def test_rejects_tampered_payload(self):
        data = json.loads(self.exported)
        data["events"][1]["payload"]["avg_value"] = 12.0
        result = self._assert_rejected_unchanged(json.dumps(data))
        self.assertIn("verification failed", result.error)

    def test_rejects_dropped_event(self):
        data = json.loads(self.exported)
        del data["events"][1]
        data["length"] = 2
        self._assert_rejected_unchanged(json.dumps(data))

    def test_rejects_wrong_root_hash(self):
        data = json.loads(self.exported)
        data["root_hash"] = "f" * 64
        self._assert_rejected_unchanged(json.dumps(data))

    def test_rejects_wrong_length(self):
        data = json.loads(self.exported)
        data["length"] = 7
        self._assert_rejected_unchanged(json.dumps(data))

    def test_rejects_forged_event_id(self):
        data = json.loads(self.exported)
        original_id = data["events"][0]["event_id"]
        data["events"][0]["event_id"] = "deadbeefdeadbeef"

        target = EventChain()
        result = target.import_chain(json.dumps(data))

        self.assertFalse(result.success)
        self.assertEqual(len(target), 0)
        self.assertIsNone(target.audit_trail(original_id))

    def test_rejects_deeply_nested_json(self):
        deep = "[" * 100000 + "]" * 100000
        self._assert_rejected_unchanged(deep)

    def test_rejects_deeply_nested_payload(self):
        nested = {}
        for _ in range(200):
            nested = {"x": nested}
        data = json.loads(self.exported)
        data["events"][0]["payload"]["extra"] = nested
        result = self._assert_rejected_unchanged(json.dumps(data))
        self.assertIn("cannot be hashed", result.error)

    def test_rejects_malformed(self):
        for bad in ("not json", "[]", json.dumps({"version": "9.9", "events": []}),
                    json.dumps({"version": "1.0"}),
                    json.dumps({"version": "1.0", "root_hash": "", "events": [{"event_type": "bogus"}]})):
            self._assert_rejected_unchanged(bad)


class TestSqliteBackend(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db = SqliteDatabase(os.path.join(self.tmp.name, "chain.db"))
        self.db.init_schema()

    def tearDown(self):
        self.db.close()
        self.tmp.cleanup()

    def test_chain_survives_reload(self):
        chain = populated_chain(SqliteChainBackend(self.db))
        reloaded = EventChain(SqliteChainBackend(self.db))
        self.assertEqual(reloaded.root_hash, chain.root_hash)
        self.assertEqual(len(reloaded), 3)
        self.assertTrue(reloaded.verify_chain().is_valid)

    def test_import_replaces_rows(self):
        chain = EventChain(SqliteChainBackend(self.db))
        chain.append(EventType.SIGNAL_VALIDATED, {"signal_id": "old"})
        exported = populated_chain().export()

        self.assertTrue(chain.import_chain(exported).success)

        reloaded = EventChain(SqliteChainBackend(self.db))
        self.assertEqual(len(reloaded), 3)
        self.assertEqual(reloaded.root_hash, json.loads(exported)["root_hash"])


if __name__ == "__main__":
    unittest.main()
