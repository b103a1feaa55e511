"""
Error taxonomy for the integrity core.

Verification failures are deliberately absent: verify() returns False and
chain problems are reported through ChainVerification, never raised.
"""


class PulseIntegrityError(Exception):
    """Base class for all pulse_integrity errors."""


class InvalidArgument(PulseIntegrityError, ValueError):
    """Malformed input to a pure function (negative count, missing field)."""


class SigningError(PulseIntegrityError):
    """Key pair missing or malformed at sign time."""


class StoreError(PulseIntegrityError):
    """Base class for errors talking to an external store."""


class TransientStoreError(StoreError):
    """Retryable I/O failure (locked database, dropped connection)."""


class PersistenceError(StoreError):
    """Permanent store failure; retrying will not help."""


class JobDeadlineExceeded(PulseIntegrityError):
    """The nightly run overran its wall-clock budget."""
