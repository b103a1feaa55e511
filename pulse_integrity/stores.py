"""
External store interfaces used by the nightly job, with SQLite backends.

The raw submission source, the signature store and the run lock are
collaborators outside the integrity core; the job only relies on the
abstract interfaces below. Calls are wrapped in bounded retries on
TransientStoreError; PersistenceError is never retried.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import STORE_MAX_ATTEMPTS, STORE_RETRY_MAX_WAIT
from .db import SqliteDatabase
from .errors import InvalidArgument, TransientStoreError
from .models import AggregateRecord, DataSignature, SignedAggregate, SubmissionRow
from .util import iso_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for store calls."""
    max_attempts: int = STORE_MAX_ATTEMPTS
    multiplier: float = 0.5
    max_wait: float = STORE_RETRY_MAX_WAIT


def call_with_retries(fn: Callable[..., T], *args: Any, policy: Optional[RetryPolicy] = None, **kwargs: Any) -> T:
    """
    Call fn, retrying on TransientStoreError.

    After the last attempt the TransientStoreError itself is re-raised so
    callers see the real cause.
    """
    policy = policy or RetryPolicy()
    retrying = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(multiplier=policy.multiplier, max=policy.max_wait),
        retry=retry_if_exception_type(TransientStoreError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    for attempt in retrying:
        with attempt:
            return fn(*args, **kwargs)


# ============================================================
# Interfaces
# ============================================================

class SubmissionSource(ABC):
    """Read-only access to raw per-respondent rows."""

    @abstractmethod
    def fetch_rows(self, start: datetime, end: datetime) -> List[SubmissionRow]:
        """Rows with start <= created_at < end."""
        pass


class SignatureStore(ABC):
    """Upsert-by-id storage for signed aggregates."""

    @abstractmethod
    def upsert(
        self,
        signature_id: str,
        data_hash: str,
        signature: str,
        public_key: str,
        metadata: Dict[str, Any],
    ) -> None:
        pass

    @abstractmethod
    def get(self, signature_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def list_for_date(self, day: str) -> List[Dict[str, Any]]:
        pass


class RunLock(ABC):
    """
    Advisory lock preventing overlapping runs for the same date.

    acquire() returning False is the "run has already started" signal.
    """

    @abstractmethod
    def acquire(self, run_date: str) -> bool:
        pass

    @abstractmethod
    def release(self, run_date: str, status: str) -> None:
        pass


# ============================================================
# SQLite implementations
# ============================================================

class SqliteSubmissionSource(SubmissionSource):

    def __init__(self, db: SqliteDatabase):
        self._db = db

    def add(self, row: SubmissionRow) -> None:
        self.add_many([row])

    def add_many(self, rows: Iterable[SubmissionRow]) -> None:
        """
        Ingest rows (used by intake and fixtures).

        created_at is stored normalized to UTC with millisecond precision so
        fetch_rows() can compare it as text against the day window.

        Raises:
            InvalidArgument: created_at missing or not a parseable timestamp
        """
        values = []
        for row in rows:
            if row.created_at is None:
                raise InvalidArgument("Submission row needs created_at")
            created = iso_timestamp(parse_timestamp(row.created_at))
            values.append((row.group_id, float(row.sub_score_a), float(row.sub_score_b), created))
        with self._db.transaction() as conn:
            conn.executemany(
                "INSERT INTO submissions(group_id, sub_score_a, sub_score_b, created_at) VALUES(?,?,?,?)",
                values,
            )

    def fetch_rows(self, start: datetime, end: datetime) -> List[SubmissionRow]:
        with self._db.transaction() as conn:
            cur = conn.execute(
                "SELECT group_id, sub_score_a, sub_score_b, created_at FROM submissions "
                "WHERE created_at >= ? AND created_at < ? ORDER BY id ASC",
                (iso_timestamp(start), iso_timestamp(end)),
            )
            return [
                SubmissionRow(
                    group_id=r["group_id"],
                    sub_score_a=r["sub_score_a"],
                    sub_score_b=r["sub_score_b"],
                    created_at=r["created_at"],
                )
                for r in cur.fetchall()
            ]


class SqliteSignatureStore(SignatureStore):

    def __init__(self, db: SqliteDatabase):
        self._db = db

    def upsert(self, signature_id, data_hash, signature, public_key, metadata) -> None:
        """Insert or replace the row for signature_id. Re-runs never duplicate."""
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO data_signatures(signature_id, data_hash, signature, public_key, metadata_json, signed_date) "
                "VALUES(?,?,?,?,?,?) "
                "ON CONFLICT(signature_id) DO UPDATE SET "
                "data_hash=excluded.data_hash, signature=excluded.signature, public_key=excluded.public_key, "
                "metadata_json=excluded.metadata_json, signed_date=excluded.signed_date, "
                "updated_at=strftime('%Y-%m-%dT%H:%M:%SZ', 'now')",
                (signature_id, data_hash, signature, public_key,
                 json.dumps(metadata, sort_keys=True), str(metadata.get("date", ""))),
            )

    def get(self, signature_id: str) -> Optional[Dict[str, Any]]:
        with self._db.transaction() as conn:
            cur = conn.execute(
                "SELECT signature_id, data_hash, signature, public_key, metadata_json "
                "FROM data_signatures WHERE signature_id=?",
                (signature_id,),
            )
            row = cur.fetchone()
        return self._row_to_dict(row) if row else None

    def list_for_date(self, day: str) -> List[Dict[str, Any]]:
        with self._db.transaction() as conn:
            cur = conn.execute(
                "SELECT signature_id, data_hash, signature, public_key, metadata_json "
                "FROM data_signatures WHERE signed_date=? ORDER BY signature_id ASC",
                (day,),
            )
            rows = cur.fetchall()
        return [self._row_to_dict(r) for r in rows]

    def count(self) -> int:
        with self._db.transaction() as conn:
            return conn.execute("SELECT COUNT(*) AS cnt FROM data_signatures").fetchone()["cnt"]

    @staticmethod
    def _row_to_dict(row) -> Dict[str, Any]:
        return {
            "signature_id": row["signature_id"],
            "data_hash": row["data_hash"],
            "signature": row["signature"],
            "public_key": row["public_key"],
            "metadata": json.loads(row["metadata_json"]),
        }


class SqliteRunLock(RunLock):
    """
    Run lock backed by the job_runs table.

    A date can be re-acquired once its previous run finished (done or
    failed), or when a "running" row is older than stale_after_seconds,
    which covers a process that died mid-run.
    """

    def __init__(self, db: SqliteDatabase, stale_after_seconds: float = 3600.0,
                 clock: Callable[[], float] = time.time):
        self._db = db
        self._stale_after = stale_after_seconds
        self._clock = clock

    def acquire(self, run_date: str) -> bool:
        now = self._clock()
        with self._db.transaction() as conn:
            cur = conn.execute(
                "INSERT INTO job_runs(run_date, status, started_at) VALUES(?, 'running', ?) "
                "ON CONFLICT(run_date) DO UPDATE SET status='running', started_at=excluded.started_at, "
                "finished_at=NULL "
                "WHERE job_runs.status != 'running' OR job_runs.started_at < ?",
                (run_date, now, now - self._stale_after),
            )
            return cur.rowcount == 1

    def release(self, run_date: str, status: str) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE job_runs SET status=?, finished_at=? WHERE run_date=?",
                (status, self._clock(), run_date),
            )

    def status(self, run_date: str) -> Optional[str]:
        with self._db.transaction() as conn:
            row = conn.execute("SELECT status FROM job_runs WHERE run_date=?", (run_date,)).fetchone()
        return row["status"] if row else None


# ============================================================
# Signed aggregate <-> store row
# ============================================================

def store_metadata(signed: SignedAggregate, run_id: str = "") -> Dict[str, Any]:
    """Metadata column for a signed aggregate; carries the full record."""
    return {
        "record": signed.record.to_dict(),
        "group_id": signed.group_id,
        "date": signed.date,
        "timestamp": signed.signature.timestamp,
        "algorithm": signed.signature.algorithm,
        "run_id": run_id,
    }


def signed_aggregate_from_row(row: Dict[str, Any]) -> SignedAggregate:
    """
    Rebuild a SignedAggregate from a signature store row.

    Raises:
        InvalidArgument: the row is missing fields
    """
    metadata = row.get("metadata") or {}
    if not isinstance(metadata.get("record"), dict):
        raise InvalidArgument(f"Stored signature {row.get('signature_id')} has no record")
    signature = DataSignature(
        signature=row["signature"],
        public_key=row["public_key"],
        timestamp=str(metadata.get("timestamp", "")),
        content_hash=row["data_hash"],
        algorithm=str(metadata.get("algorithm", "")),
    )
    return SignedAggregate(record=AggregateRecord.from_dict(metadata["record"]), signature=signature)
