"""
Nightly signing job.

Once per day: fetch the previous day's raw submissions, aggregate each
group, sign every aggregate and upsert it into the signature store,
logging each stored aggregate to the event chain.

    IDLE -> FETCHING -> AGGREGATING -> SIGNING -> PERSISTING -> DONE
                |                                     |
                +-------------> FAILED <--------------+

A deadline overrun also ends in FAILED. When the run lock for the date is
already held the job does nothing and reports SKIPPED. Per-group signing
or storage errors are logged and that group is skipped; the rest of the
run continues. Store writes are upserts keyed "{date}_{group}", so a
failed run can simply be re-run in full.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from .aggregation import CompositeFormula, aggregate_group, group_rows
from .chain import EventChain
from .config import JOB_DEADLINE_SECONDS
from .errors import InvalidArgument, JobDeadlineExceeded, PersistenceError, SigningError, StoreError
from .keys import fingerprint
from .logging_config import audit_log, set_run_id
from .models import AggregateRecord, EventType, SignedAggregate
from .signing import AggregateSigner
from .stores import (
    RetryPolicy,
    RunLock,
    SignatureStore,
    SubmissionSource,
    call_with_retries,
    store_metadata,
)
from .util import day_window, iso_timestamp, parse_iso_date, previous_day, signature_id, utc_now

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    AGGREGATING = "aggregating"
    SIGNING = "signing"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class JobResult:
    """Outcome of one run."""
    run_date: str
    run_id: str
    state: JobState = JobState.IDLE
    aggregates: List[AggregateRecord] = field(default_factory=list)
    signed: List[SignedAggregate] = field(default_factory=list)
    persisted: List[str] = field(default_factory=list)
    failed_groups: List[Dict[str, str]] = field(default_factory=list)
    public_key: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.state == JobState.DONE and not self.failed_groups

    @property
    def exit_code(self) -> int:
        """0 when the scheduler has nothing to retry, 1 otherwise."""
        if self.state == JobState.SKIPPED or self.success:
            return 0
        return 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_date": self.run_date,
            "run_id": self.run_id,
            "state": self.state.value,
            "signed_count": len(self.signed),
            "persisted": list(self.persisted),
            "failed_groups": list(self.failed_groups),
            "public_key": self.public_key,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error": self.error,
        }


class NightlySigningJob:
    """
    Orchestrates one day's aggregation and signing.

    All collaborators are injected; nothing here reaches for globals.
    """

    def __init__(
        self,
        source: SubmissionSource,
        signature_store: SignatureStore,
        signer: AggregateSigner,
        chain: Optional[EventChain] = None,
        run_lock: Optional[RunLock] = None,
        formula: CompositeFormula = CompositeFormula(),
        deadline_seconds: float = JOB_DEADLINE_SECONDS,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.signature_store = signature_store
        self.signer = signer
        self.chain = chain
        self.run_lock = run_lock
        self.formula = formula
        self.deadline_seconds = deadline_seconds
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._monotonic = monotonic
        self._started: float = 0.0

    def run(self, target_date: Union[str, date, None] = None, run_id: Optional[str] = None) -> JobResult:
        """
        Run the job for target_date (default: yesterday, UTC).

        Never raises for operational failures; they end up in
        JobResult.state / JobResult.error and the exit code.
        """
        run_id = set_run_id(run_id)
        if target_date is None:
            day = previous_day(self._clock())
        elif isinstance(target_date, date):
            day = target_date
        else:
            day = parse_iso_date(target_date)
        day_str = day.isoformat()

        result = JobResult(run_date=day_str, run_id=run_id, started_at=iso_timestamp(self._clock()))
        key_pair = self.signer.key_pair
        result.public_key = key_pair.public_key_hex if key_pair is not None else None

        if self.run_lock is not None:
            try:
                acquired = call_with_retries(self.run_lock.acquire, day_str, policy=self.retry_policy)
            except StoreError as e:
                return self._fail(result, f"Could not acquire run lock: {e}")
            if not acquired:
                audit_log.run_skipped(day_str)
                result.state = JobState.SKIPPED
                result.finished_at = iso_timestamp(self._clock())
                return result

        self._started = self._monotonic()
        try:
            self._execute(day, result)
        except (JobDeadlineExceeded, StoreError, InvalidArgument) as e:
            self._fail(result, str(e))
        finally:
            if self.run_lock is not None:
                self._release_lock(day_str, result.state)

        result.finished_at = iso_timestamp(self._clock())
        return result

    # ============================================================
    # Stages
    # ============================================================

    def _execute(self, day: date, result: JobResult) -> None:
        day_str = result.run_date

        self._enter(result, JobState.FETCHING)
        start, end = day_window(day)
        rows = call_with_retries(self.source.fetch_rows, start, end, policy=self.retry_policy)
        self._check_deadline()

        self._enter(result, JobState.AGGREGATING, rows=len(rows))
        for group_id, group in group_rows(rows).items():
            try:
                result.aggregates.append(aggregate_group(group_id, day_str, group, self.formula))
            except InvalidArgument as e:
                self._skip(result, group_id, "aggregating", str(e))

        if not result.aggregates:
            if result.failed_groups:
                raise InvalidArgument("No group could be aggregated")
            logger.info("No submissions found for %s, nothing to sign", day_str)
            self._enter(result, JobState.DONE, signed=0)
            return

        self._enter(result, JobState.SIGNING, groups=len(result.aggregates))
        for record in result.aggregates:
            self._check_deadline()
            try:
                signed = self.signer.sign_aggregate(record)
            except SigningError as e:
                self._skip(result, record.group_id, "signing", str(e))
                continue
            result.signed.append(signed)
            audit_log.aggregate_signed(record.group_id, day_str, record.n, signed.signature.content_hash)

        self._enter(result, JobState.PERSISTING, signed=len(result.signed))
        for signed in result.signed:
            self._check_deadline()
            self._persist(signed, result)

        if not result.persisted:
            raise PersistenceError(f"No aggregate for {day_str} was stored")

        if self.chain is not None:
            self.chain.append(EventType.SNAPSHOT_CREATED, {
                "date": day_str,
                "signature_ids": list(result.persisted),
                "public_key_fingerprint": fingerprint(bytes.fromhex(result.public_key)),
            })

        self._enter(result, JobState.DONE, persisted=len(result.persisted), failed=len(result.failed_groups))

    def _persist(self, signed: SignedAggregate, result: JobResult) -> None:
        sig_id = signature_id(signed.date, signed.group_id)
        sig = signed.signature
        try:
            call_with_retries(
                self.signature_store.upsert,
                sig_id,
                sig.content_hash,
                sig.signature,
                sig.public_key,
                store_metadata(signed, result.run_id),
                policy=self.retry_policy,
            )
        except StoreError as e:
            self._skip(result, signed.group_id, "persisting", str(e))
            return

        result.persisted.append(sig_id)
        audit_log.signature_persisted(sig_id, sig.content_hash)

        if self.chain is not None:
            self.chain.log_aggregate_update(
                signed.group_id,
                signed.date,
                signed.record.n,
                signed.record.avg_value,
                content_hash=sig.content_hash,
                signature_id=sig_id,
            )

    # ============================================================
    # Helpers
    # ============================================================

    def _enter(self, result: JobResult, state: JobState, **details) -> None:
        result.state = state
        audit_log.job_state(result.run_date, state.value, **details)

    def _skip(self, result: JobResult, group_id: str, stage: str, reason: str) -> None:
        result.failed_groups.append({"group_id": group_id, "stage": stage, "error": reason})
        audit_log.group_skipped(group_id, result.run_date, stage, reason)

    def _fail(self, result: JobResult, error: str) -> JobResult:
        result.error = error
        self._enter(result, JobState.FAILED, error=error)
        result.finished_at = iso_timestamp(self._clock())
        return result

    def _check_deadline(self) -> None:
        elapsed = self._monotonic() - self._started
        if elapsed > self.deadline_seconds:
            raise JobDeadlineExceeded(
                f"Run exceeded its {self.deadline_seconds:.0f}s budget after {elapsed:.1f}s"
            )

    def _release_lock(self, day_str: str, state: JobState) -> None:
        try:
            call_with_retries(self.run_lock.release, day_str, state.value, policy=self.retry_policy)
        except StoreError:
            logger.exception("Could not release run lock for %s", day_str)
