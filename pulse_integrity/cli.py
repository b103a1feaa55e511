#!/usr/bin/env python3
"""
pulse-integrity command line interface

Usage:
    pulse-integrity keygen --output <file>
    pulse-integrity public-key --key <file>
    pulse-integrity sign-nightly [--date YYYY-MM-DD] [--db <file>] [--key <file>]
    pulse-integrity verify --signed <file> [--public-key <hex>]
    pulse-integrity verify-chain --file <export.json>
    pulse-integrity gate --n <count> [--k <threshold>]
"""

import argparse
import json
import sys
from typing import List, Optional

from . import config
from .chain import EventChain, verify_events
from .chain_backends import SqliteChainBackend
from .db import SqliteDatabase
from .errors import InvalidArgument, SigningError, StoreError
from .gating import gating_message, meets_threshold
from .job import NightlySigningJob
from .keys import FileKeyProvider, KeyPair, write_key_file
from .logging_config import configure_logging
from .models import MerkleEvent
from .signing import AggregateSigner, verify_all_signatures
from .stores import SqliteRunLock, SqliteSignatureStore, SqliteSubmissionSource


def load_json(path: str):
    """Load JSON from file."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def cmd_keygen(args) -> int:
    """Generate a signing key file and print its public half."""
    key_pair = KeyPair.generate(key_id=args.kid)
    write_key_file(key_pair, args.output)
    print(json.dumps(key_pair.public_info(), indent=2))
    print(f"\nKey written to: {args.output}", file=sys.stderr)
    return 0


def cmd_public_key(args) -> int:
    try:
        key_pair = FileKeyProvider(args.key).get_key_pair()
    except SigningError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1
    print(json.dumps(AggregateSigner(key_pair).export_public_key(), indent=2))
    return 0


def cmd_sign_nightly(args) -> int:
    """Run the nightly signing job against the SQLite store."""
    try:
        key_pair = FileKeyProvider(args.key).get_key_pair()
    except SigningError as e:
        print(f"✗ Cannot load signing key: {e}", file=sys.stderr)
        return 1

    db = SqliteDatabase(args.db)
    try:
        db.init_schema()
    except StoreError as e:
        print(f"✗ Cannot open database: {e}", file=sys.stderr)
        return 1

    job = NightlySigningJob(
        source=SqliteSubmissionSource(db),
        signature_store=SqliteSignatureStore(db),
        signer=AggregateSigner(key_pair),
        chain=EventChain(SqliteChainBackend(db)),
        run_lock=SqliteRunLock(db, stale_after_seconds=args.deadline * 2),
        deadline_seconds=args.deadline,
    )
    try:
        result = job.run(args.date)
    except InvalidArgument as e:
        print(f"✗ {e}", file=sys.stderr)
        return 2

    print(json.dumps(result.to_dict(), indent=2))
    if result.exit_code == 0:
        print(f"\n✓ {result.state.value}: {len(result.persisted)} aggregate(s) signed", file=sys.stderr)
    else:
        print(f"\n✗ {result.state.value}: {result.error or 'some groups failed'}", file=sys.stderr)
        for failed in result.failed_groups:
            print(f"  - {failed['group_id']} ({failed['stage']}): {failed['error']}", file=sys.stderr)
    return result.exit_code


def cmd_verify(args) -> int:
    """Verify one signed aggregate or a list of them."""
    try:
        data = load_json(args.signed)
    except (OSError, ValueError, RecursionError) as e:
        print(f"✗ Cannot read {args.signed}: {e}", file=sys.stderr)
        return 1
    batch = data if isinstance(data, list) else [data]
    report = verify_all_signatures(batch, args.public_key)

    print(json.dumps(report.to_dict(), indent=2))
    if report.all_valid and report.total_count > 0:
        print(f"\n✓ verified ({report.valid_count}/{report.total_count})", file=sys.stderr)
        return 0
    print(f"\n✗ NOT VERIFIED ({report.valid_count}/{report.total_count})", file=sys.stderr)
    return 1


def cmd_verify_chain(args) -> int:
    """Verify an exported chain and list every mismatch."""
    try:
        data = load_json(args.file)
    except (OSError, ValueError, RecursionError) as e:
        print(f"✗ Cannot read {args.file}: {e}", file=sys.stderr)
        return 1
    try:
        events = [MerkleEvent.from_dict(e) for e in data.get("events", [])]
    except (InvalidArgument, AttributeError) as e:
        print(f"✗ INVALID: {e}", file=sys.stderr)
        return 1

    result = verify_events(events)
    print(json.dumps(result.to_dict(), indent=2))
    root = events[-1].current_hash if events else ""
    if result.is_valid and data.get("root_hash") == root:
        print(f"\n✓ chain valid ({result.total_events} events)", file=sys.stderr)
        return 0
    if result.is_valid:
        print("\n✗ INVALID: root hash does not match last event", file=sys.stderr)
    else:
        print(f"\n✗ INVALID: first bad event at index {result.first_invalid_index}", file=sys.stderr)
    return 1


def cmd_gate(args) -> int:
    try:
        disclose = meets_threshold(args.n, args.k)
        message = gating_message(args.n, args.k)
    except InvalidArgument as e:
        print(f"✗ {e}", file=sys.stderr)
        return 2
    print(json.dumps({"n": args.n, "k": args.k, "disclose": disclose, "message": message}, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pulse-integrity",
        description="Privacy-threshold aggregation and integrity attestation",
    )
    parser.add_argument("--log-level", default=config.LOG_LEVEL)
    parser.add_argument("--plain-logs", action="store_true", help="Human-readable logs instead of JSON")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("keygen", help="Generate an Ed25519 signing key file")
    p.add_argument("--output", default=config.SIGNING_KEY_PATH)
    p.add_argument("--kid", default="aggregate-signing-01")
    p.set_defaults(func=cmd_keygen)

    p = sub.add_parser("public-key", help="Print the public key bundle")
    p.add_argument("--key", default=config.SIGNING_KEY_PATH)
    p.set_defaults(func=cmd_public_key)

    p = sub.add_parser("sign-nightly", help="Aggregate and sign one day")
    p.add_argument("--date", default=None, help="YYYY-MM-DD (default: yesterday, UTC)")
    p.add_argument("--db", default=config.DB_PATH)
    p.add_argument("--key", default=config.SIGNING_KEY_PATH)
    p.add_argument("--deadline", type=float, default=config.JOB_DEADLINE_SECONDS)
    p.set_defaults(func=cmd_sign_nightly)

    p = sub.add_parser("verify", help="Verify signed aggregate(s)")
    p.add_argument("--signed", required=True)
    p.add_argument("--public-key", default=None, help="Require signatures from this hex key")
    p.set_defaults(func=cmd_verify)

    p = sub.add_parser("verify-chain", help="Verify an exported event chain")
    p.add_argument("--file", required=True)
    p.set_defaults(func=cmd_verify_chain)

    p = sub.add_parser("gate", help="Evaluate the privacy threshold for a count")
    p.add_argument("--n", type=int, required=True)
    p.add_argument("--k", type=int, default=config.PRIVACY_THRESHOLD)
    p.set_defaults(func=cmd_gate)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 2
    configure_logging(args.log_level, json_format=not args.plain_logs and config.LOG_JSON)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
