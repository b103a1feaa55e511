import logging
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pulse_integrity.chain import EventChain
from pulse_integrity.chain_backends import SqliteChainBackend
from pulse_integrity.db import SqliteDatabase
from pulse_integrity.keys import KeyPair
from pulse_integrity.models import SubmissionRow
from pulse_integrity.signing import AggregateSigner
from pulse_integrity.stores import (
    RetryPolicy,
    SqliteRunLock,
    SqliteSignatureStore,
    SqliteSubmissionSource,
)

RUN_DATE = "2025-01-10"

# No backoff sleeps in tests
FAST_RETRIES = RetryPolicy(max_attempts=3, multiplier=0, max_wait=0)


def make_rows(group_id, count, day=RUN_DATE, a=7.0, b=3.0):
    """count rows spread over the day, sub-scores alternating around (a, b)."""
    rows = []
    for i in range(count):
        delta = 1.0 if i % 2 else -1.0
        rows.append(SubmissionRow(
            group_id=group_id,
            sub_score_a=a + delta,
            sub_score_b=b - delta,
            created_at=f"{day}T{i % 24:02d}:{i % 60:02d}:00.000Z",
        ))
    return rows


@pytest.fixture
def db(tmp_path):
    database = SqliteDatabase(str(tmp_path / "pulse.db"))
    database.init_schema()
    yield database
    database.close()


@pytest.fixture
def key_pair():
    return KeyPair.generate(key_id="test-signing-01")


@pytest.fixture
def signer(key_pair):
    return AggregateSigner(key_pair)


@pytest.fixture
def source(db):
    return SqliteSubmissionSource(db)


@pytest.fixture
def signature_store(db):
    return SqliteSignatureStore(db)


@pytest.fixture
def run_lock(db):
    return SqliteRunLock(db)


@pytest.fixture
def chain(db):
    return EventChain(SqliteChainBackend(db))


@pytest.fixture
def restore_logging():
    """configure_logging() replaces root handlers; put them back afterwards."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
