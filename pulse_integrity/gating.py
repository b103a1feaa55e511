"""
Privacy threshold gating (k-anonymity).

A group's count or mean is disclosed only when at least k respondents
contributed. The rule is a hard cutoff with no noise. It is re-applied on
every read: a group whose count drops below k after a retraction locks
again, so callers must never remember that a group "was once unlocked".
"""

from typing import Any, Dict, Union

from .config import PRIVACY_THRESHOLD
from .errors import InvalidArgument
from .models import AggregateRecord


def _check_args(n: Any, k: Any) -> None:
    if isinstance(n, bool) or not isinstance(n, int):
        raise InvalidArgument(f"Count must be an integer, got {type(n).__name__}")
    if n < 0:
        raise InvalidArgument(f"Count must be non-negative, got {n}")
    if isinstance(k, bool) or not isinstance(k, int) or k < 1:
        raise InvalidArgument(f"Threshold must be a positive integer, got {k!r}")


def meets_threshold(n: int, k: int = PRIVACY_THRESHOLD) -> bool:
    """
    Decide whether a count is large enough to publish.

    Raises:
        InvalidArgument: n is negative or not an integer, or k < 1
    """
    _check_args(n, k)
    return n >= k


def gating_message(n: int, k: int = PRIVACY_THRESHOLD) -> str:
    """Human-readable gating status for a count."""
    _check_args(n, k)
    if n == 0:
        return f"No submissions yet. We need at least {k} to display content while protecting privacy."

    remaining = k - n
    if remaining > 0:
        plural = "s" if n != 1 else ""
        return f"{n} submission{plural} so far. {remaining} more needed to meet the n>={k} privacy threshold."

    return f"{n} submissions. Privacy threshold met."


def public_view(
    record: Union[AggregateRecord, Dict[str, Any]],
    k: int = PRIVACY_THRESHOLD,
) -> Dict[str, Any]:
    """
    Project an aggregate onto what may be shown publicly.

    Locked groups expose only their identity and a status message; the
    count, mean and interval are left out entirely rather than blanked.
    gating_message() quotes the count, so it is for operators only and
    never appears here.
    """
    if isinstance(record, dict):
        record = AggregateRecord.from_dict(record)

    if meets_threshold(record.n, k):
        view = record.to_dict()
        view["locked"] = False
        return view

    return {
        "group_id": record.group_id,
        "date": record.date,
        "version": record.version,
        "locked": True,
        "message": locked_message(k),
    }


def locked_message(k: int = PRIVACY_THRESHOLD) -> str:
    """Public notice for a locked group. Says nothing about the actual count."""
    return f"Fewer than {k} submissions. Results are hidden until the n>={k} privacy threshold is met."
