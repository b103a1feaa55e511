"""
Nightly signing job: end-to-end runs against SQLite plus failure paths
with fake collaborators.
"""

import pytest

from pulse_integrity.chain import EventChain
from pulse_integrity.errors import PersistenceError, TransientStoreError
from pulse_integrity.gating import public_view
from pulse_integrity.job import JobState, NightlySigningJob
from pulse_integrity.models import EventType, SubmissionRow
from pulse_integrity.signing import AggregateSigner
from pulse_integrity.stores import SignatureStore, SubmissionSource, signed_aggregate_from_row

from conftest import FAST_RETRIES, RUN_DATE, make_rows


class Ticker:
    """Monotonic clock that jumps by step seconds on every read."""

    def __init__(self, step):
        self.step = step
        self.value = 0.0

    def __call__(self):
        self.value += self.step
        return self.value


class FailingSource(SubmissionSource):
    def __init__(self):
        self.calls = 0

    def fetch_rows(self, start, end):
        self.calls += 1
        raise TransientStoreError("connection reset")


class ListSource(SubmissionSource):
    def __init__(self, rows):
        self.rows = rows

    def fetch_rows(self, start, end):
        return list(self.rows)


class PickyStore(SignatureStore):
    """In-memory store that refuses to write the listed groups."""

    def __init__(self, refuse=()):
        self.refuse = set(refuse)
        self.rows = {}

    def upsert(self, signature_id, data_hash, signature, public_key, metadata):
        if metadata["group_id"] in self.refuse:
            raise PersistenceError(f"constraint violation for {signature_id}")
        self.rows[signature_id] = {
            "signature_id": signature_id,
            "data_hash": data_hash,
            "signature": signature,
            "public_key": public_key,
            "metadata": metadata,
        }

    def get(self, signature_id):
        return self.rows.get(signature_id)

    def list_for_date(self, day):
        return [r for r in self.rows.values() if r["metadata"]["date"] == day]


@pytest.fixture
def job(source, signature_store, signer, chain, run_lock):
    return NightlySigningJob(
        source=source,
        signature_store=signature_store,
        signer=signer,
        chain=chain,
        run_lock=run_lock,
        retry_policy=FAST_RETRIES,
    )


def test_signs_and_stores_group_over_threshold(job, source, signature_store, signer, chain, run_lock):
    source.add_many(make_rows("Edmonton 1", 25))

    result = job.run(RUN_DATE)

    assert result.state == JobState.DONE
    assert result.exit_code == 0
    assert result.persisted == [f"{RUN_DATE}_Edmonton 1"]
    assert result.public_key == signer.public_key

    stored = signed_aggregate_from_row(signature_store.get(f"{RUN_DATE}_Edmonton 1"))
    assert stored.record.n == 25
    assert stored.record.date == RUN_DATE
    assert AggregateSigner.verify_signed_aggregate(stored, signer.public_key)
    assert public_view(stored.record)["locked"] is False

    events = chain.events
    assert [e.event_type for e in events] == [EventType.AGGREGATE_UPDATED, EventType.SNAPSHOT_CREATED]
    assert events[0].payload["group_id"] == "Edmonton 1"
    assert events[0].payload["content_hash"] == stored.signature.content_hash
    assert events[1].payload["signature_ids"] == [f"{RUN_DATE}_Edmonton 1"]
    assert chain.verify_chain().is_valid
    assert run_lock.status(RUN_DATE) == "done"


def test_group_under_threshold_is_signed_but_locked(job, source, signature_store, signer):
    source.add_many(make_rows("Lethbridge", 12))

    result = job.run(RUN_DATE)

    assert result.state == JobState.DONE
    stored = signed_aggregate_from_row(signature_store.get(f"{RUN_DATE}_Lethbridge"))
    assert stored.record.n == 12
    assert AggregateSigner.verify_signed_aggregate(stored, signer.public_key)

    view = public_view(stored.record)
    assert view["locked"] is True
    assert "n" not in view
    assert "avg_value" not in view


def test_only_target_day_is_aggregated(job, source, signature_store):
    source.add_many(make_rows("edmonton", 25))
    source.add_many(make_rows("edmonton", 5, day="2025-01-11"))
    source.add(SubmissionRow("edmonton", 9, 1, created_at="2025-01-09T23:59:59.999Z"))

    job.run(RUN_DATE)

    stored = signed_aggregate_from_row(signature_store.get(f"{RUN_DATE}_edmonton"))
    assert stored.record.n == 25


def test_rerun_overwrites_without_duplicates(job, source, signature_store, run_lock):
    source.add_many(make_rows("edmonton", 25))
    job.run(RUN_DATE)
    source.add_many(make_rows("edmonton", 1))

    result = job.run(RUN_DATE)

    assert result.state == JobState.DONE
    assert signature_store.count() == 1
    assert signed_aggregate_from_row(signature_store.get(f"{RUN_DATE}_edmonton")).record.n == 26


def test_no_rows_is_done_with_nothing_signed(job, signature_store, chain):
    result = job.run(RUN_DATE)
    assert result.state == JobState.DONE
    assert result.exit_code == 0
    assert result.signed == []
    assert signature_store.count() == 0
    assert len(chain) == 0


def test_skipped_when_run_already_started(job, source, signature_store, run_lock):
    source.add_many(make_rows("edmonton", 25))
    assert run_lock.acquire(RUN_DATE)

    result = job.run(RUN_DATE)

    assert result.state == JobState.SKIPPED
    assert result.exit_code == 0
    assert signature_store.count() == 0
    assert run_lock.status(RUN_DATE) == "running"


def test_deadline_overrun_fails(source, signature_store, signer, chain, run_lock):
    source.add_many(make_rows("edmonton", 25))
    job = NightlySigningJob(
        source=source,
        signature_store=signature_store,
        signer=signer,
        chain=chain,
        run_lock=run_lock,
        deadline_seconds=5,
        retry_policy=FAST_RETRIES,
        monotonic=Ticker(step=10),
    )

    result = job.run(RUN_DATE)

    assert result.state == JobState.FAILED
    assert result.exit_code == 1
    assert "budget" in result.error
    assert signature_store.count() == 0
    assert run_lock.status(RUN_DATE) == "failed"


def test_fetch_failure_fails_after_retries(signature_store, signer):
    source = FailingSource()
    job = NightlySigningJob(source, signature_store, signer, retry_policy=FAST_RETRIES)

    result = job.run(RUN_DATE)

    assert result.state == JobState.FAILED
    assert source.calls == FAST_RETRIES.max_attempts
    assert "connection reset" in result.error


def test_store_failure_skips_group_and_flags_retry(signer):
    rows = make_rows("calgary", 21) + make_rows("edmonton", 25)
    store = PickyStore(refuse={"calgary"})
    chain = EventChain()
    job = NightlySigningJob(ListSource(rows), store, signer, chain=chain, retry_policy=FAST_RETRIES)

    result = job.run(RUN_DATE)

    assert result.state == JobState.DONE
    assert result.exit_code == 1
    assert result.persisted == [f"{RUN_DATE}_edmonton"]
    assert result.failed_groups == [{
        "group_id": "calgary",
        "stage": "persisting",
        "error": f"constraint violation for {RUN_DATE}_calgary",
    }]
    assert [e.payload.get("group_id") for e in chain.events if e.event_type == EventType.AGGREGATE_UPDATED] == ["edmonton"]


def test_nothing_persisted_fails(signer):
    store = PickyStore(refuse={"edmonton"})
    job = NightlySigningJob(ListSource(make_rows("edmonton", 25)), store, signer, retry_policy=FAST_RETRIES)

    result = job.run(RUN_DATE)

    assert result.state == JobState.FAILED
    assert store.rows == {}


def test_missing_key_fails_every_group(source):
    source.add_many(make_rows("edmonton", 25))
    store = PickyStore()
    job = NightlySigningJob(source, store, AggregateSigner(None), retry_policy=FAST_RETRIES)

    result = job.run(RUN_DATE)

    assert result.state == JobState.FAILED
    assert result.failed_groups[0]["stage"] == "signing"
    assert result.public_key is None
    assert store.rows == {}


def test_bad_rows_skip_their_group(signer):
    rows = make_rows("edmonton", 25) + [SubmissionRow("calgary", float("nan"), 1.0)]
    store = PickyStore()
    job = NightlySigningJob(ListSource(rows), store, signer, retry_policy=FAST_RETRIES)

    result = job.run(RUN_DATE)

    assert result.state == JobState.DONE
    assert [f["group_id"] for f in result.failed_groups] == ["calgary"]
    assert list(store.rows) == [f"{RUN_DATE}_edmonton"]


def test_defaults_to_previous_day(signer):
    from datetime import datetime, timezone

    store = PickyStore()
    job = NightlySigningJob(
        ListSource([]), store, signer,
        clock=lambda: datetime(2025, 1, 11, 2, 0, tzinfo=timezone.utc),
    )
    assert job.run().run_date == RUN_DATE


def test_run_id_propagated(signer):
    store = PickyStore()
    job = NightlySigningJob(ListSource(make_rows("edmonton", 25)), store, signer, retry_policy=FAST_RETRIES)

    result = job.run(RUN_DATE, run_id="nightly-42")

    assert result.run_id == "nightly-42"
    assert store.rows[f"{RUN_DATE}_edmonton"]["metadata"]["run_id"] == "nightly-42"
    assert result.to_dict()["state"] == "done"
