#!/usr/bin/env python3
"""
Nightly signing job entry point for the scheduler (runs daily at 02:00).

Signs the previous day's group aggregates. The exit code is non-zero
whenever the run failed or left groups unsigned, so the scheduler alerts
and the run can be retried in full.

Usage:
    python tools/nightly_signing.py [--date YYYY-MM-DD] [--db data/pulse.db] [--key secrets/aggregate_signing_key.json]
"""

import sys

from pulse_integrity.cli import main

if __name__ == "__main__":
    sys.exit(main(["sign-nightly"] + sys.argv[1:]))
