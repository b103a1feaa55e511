"""
Pulse Integrity

Privacy-threshold aggregation and integrity attestation for anonymous
signal data.

- Threshold gate: a group is disclosed only when n >= k (k = 20)
- Aggregate signer: Ed25519 over the SHA-256 of canonical JSON
- Event chain: hash-linked, append-only log of domain events
- Nightly job: aggregate, sign and store each group's day

Usage:
    from pulse_integrity import (
        AggregateSigner,
        EventChain,
        KeyPair,
        NightlySigningJob,
        meets_threshold,
    )

    signer = AggregateSigner(KeyPair.generate())
    chain = EventChain()

    job = NightlySigningJob(source, signature_store, signer, chain=chain)
    result = job.run("2025-01-10")

    for signed in result.signed:
        assert AggregateSigner.verify_signed_aggregate(signed, signer.public_key)
"""

__version__ = "1.0.0"

from .errors import (
    InvalidArgument,
    JobDeadlineExceeded,
    PersistenceError,
    PulseIntegrityError,
    SigningError,
    StoreError,
    TransientStoreError,
)
from .models import (
    AggregateRecord,
    BatchVerification,
    ChainVerification,
    DataSignature,
    EventType,
    ImportResult,
    MerkleEvent,
    SignedAggregate,
    SubmissionRow,
)
from .canonicalization import canonicalize, canonicalize_str
from .hashing import chain_entry_hash, content_hash, sha256_hex
from .gating import gating_message, locked_message, meets_threshold, public_view
from .keys import FileKeyProvider, KeyPair, KeyProvider
from .signing import AggregateSigner, verify_all_signatures
from .aggregation import CompositeFormula, aggregate_group, aggregate_rows
from .chain import EventChain, verify_events
from .chain_backends import ChainBackend, InMemoryChainBackend, SqliteChainBackend
from .db import SqliteDatabase
from .stores import (
    RetryPolicy,
    RunLock,
    SignatureStore,
    SqliteRunLock,
    SqliteSignatureStore,
    SqliteSubmissionSource,
    SubmissionSource,
)
from .job import JobResult, JobState, NightlySigningJob

__all__ = [
    "InvalidArgument",
    "JobDeadlineExceeded",
    "PersistenceError",
    "PulseIntegrityError",
    "SigningError",
    "StoreError",
    "TransientStoreError",
    "AggregateRecord",
    "BatchVerification",
    "ChainVerification",
    "DataSignature",
    "EventType",
    "ImportResult",
    "MerkleEvent",
    "SignedAggregate",
    "SubmissionRow",
    "canonicalize",
    "canonicalize_str",
    "chain_entry_hash",
    "content_hash",
    "sha256_hex",
    "gating_message",
    "locked_message",
    "meets_threshold",
    "public_view",
    "FileKeyProvider",
    "KeyPair",
    "KeyProvider",
    "AggregateSigner",
    "verify_all_signatures",
    "CompositeFormula",
    "aggregate_group",
    "aggregate_rows",
    "EventChain",
    "verify_events",
    "ChainBackend",
    "InMemoryChainBackend",
    "SqliteChainBackend",
    "SqliteDatabase",
    "RetryPolicy",
    "RunLock",
    "SignatureStore",
    "SqliteRunLock",
    "SqliteSignatureStore",
    "SqliteSubmissionSource",
    "SubmissionSource",
    "JobResult",
    "JobState",
    "NightlySigningJob",
]
