"""
SQLite storage for submissions, signatures, run locks and chain events.

Stands in for the hosted relational store. Each SqliteDatabase owns one
file; connections are thread-local and reused within a thread. sqlite3
errors are translated into TransientStoreError (busy/locked, worth
retrying) or PersistenceError (everything else).
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import PersistenceError, TransientStoreError

_TRANSIENT_MARKERS = ("locked", "busy", "unable to open")


def translate_error(exc: sqlite3.Error) -> Exception:
    """Map a sqlite3 error onto the store error taxonomy."""
    message = str(exc)
    if isinstance(exc, sqlite3.OperationalError) and any(m in message.lower() for m in _TRANSIENT_MARKERS):
        return TransientStoreError(message)
    return PersistenceError(message)


class SqliteDatabase:
    """
    One SQLite database file with the integrity schema.

    Safe to call init_schema() multiple times (uses IF NOT EXISTS).
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._local = threading.local()

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a thread-local database connection.
        Connections are reused within the same thread.
        """
        conn = getattr(self._local, "conn", None)
        if conn is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.path), timeout=5.0, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for database transactions.
        Commits on success, rolls back on failure, translates sqlite errors.
        """
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise translate_error(e) from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise translate_error(e) from e
        except Exception:
            conn.rollback()
            raise

    def init_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS submissions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                group_id TEXT NOT NULL,
                sub_score_a REAL NOT NULL,
                sub_score_b REAL NOT NULL,
                created_at TEXT NOT NULL
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_submissions_created
            ON submissions(created_at);""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS data_signatures (
                signature_id TEXT PRIMARY KEY,
                data_hash TEXT NOT NULL,
                signature TEXT NOT NULL,
                public_key TEXT NOT NULL,
                metadata_json TEXT NOT NULL,
                signed_date TEXT NOT NULL,
                updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_data_signatures_date
            ON data_signatures(signed_date);""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS job_runs (
                run_date TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                started_at REAL NOT NULL,
                finished_at REAL
            );""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS merkle_events (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                event_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                previous_hash TEXT NOT NULL,
                current_hash TEXT NOT NULL
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_merkle_events_event_id
            ON merkle_events(event_id);""")

    def close(self) -> None:
        """Close the calling thread's connection."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None
