"""
Per-group daily aggregation of raw signals.

Interval method: normal approximation, margin = 1.96 * sd / sqrt(n) with
the population standard deviation. The mean and bounds are rounded half-up
to one decimal so published numbers match the historical records.
"""

import math
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence

from .config import (
    AGGREGATE_VERSION,
    CI_Z_SCORE,
    COMPOSITE_B_MAX,
    COMPOSITE_SCALE,
    COMPOSITE_WEIGHT_A,
    COMPOSITE_WEIGHT_B,
)
from .errors import InvalidArgument
from .models import AggregateRecord, SubmissionRow


@dataclass(frozen=True)
class CompositeFormula:
    """
    Composite score of two sub-scores.

    score = scale * (weight_a * a + weight_b * (b_max - b))

    Sub-score b counts against the composite (higher b, lower score).
    """
    scale: float = COMPOSITE_SCALE
    weight_a: float = COMPOSITE_WEIGHT_A
    weight_b: float = COMPOSITE_WEIGHT_B
    b_max: float = COMPOSITE_B_MAX

    def score(self, a: float, b: float) -> float:
        for name, value in (("sub_score_a", a), ("sub_score_b", b)):
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                raise InvalidArgument(f"{name} must be a finite number, got {value!r}")
        return self.scale * (self.weight_a * a + self.weight_b * (self.b_max - b))


def round_half_up(value: float, places: int = 1) -> float:
    factor = 10 ** places
    return math.floor(value * factor + 0.5) / factor


def confidence_interval(scores: Sequence[float], z: float = CI_Z_SCORE):
    """
    Mean and normal-approximation interval for a sample.

    Returns:
        (mean, lower, upper), unrounded
    """
    n = len(scores)
    if n == 0:
        raise InvalidArgument("Cannot compute an interval for an empty sample")
    mean = sum(scores) / n
    sd = math.sqrt(sum((s - mean) ** 2 for s in scores) / n)
    margin = z * sd / math.sqrt(n)
    return mean, mean - margin, mean + margin


def group_rows(rows: Iterable[SubmissionRow]) -> Dict[str, List[SubmissionRow]]:
    """Group rows by group id, in first-seen order."""
    groups: Dict[str, List[SubmissionRow]] = OrderedDict()
    for row in rows:
        if not row.group_id:
            raise InvalidArgument("Submission row without group_id")
        groups.setdefault(row.group_id, []).append(row)
    return groups


def aggregate_group(
    group_id: str,
    day: str,
    rows: Sequence[SubmissionRow],
    formula: CompositeFormula = CompositeFormula(),
    version: str = AGGREGATE_VERSION,
) -> AggregateRecord:
    """
    Build one group's AggregateRecord.

    Raises:
        InvalidArgument: no rows, or a row with a non-numeric sub-score
    """
    if not rows:
        raise InvalidArgument(f"Group {group_id} has no rows")
    scores = [formula.score(r.sub_score_a, r.sub_score_b) for r in rows]
    mean, lower, upper = confidence_interval(scores)
    return AggregateRecord(
        group_id=group_id,
        date=day,
        n=len(rows),
        avg_value=round_half_up(mean),
        ci_lower=round_half_up(lower),
        ci_upper=round_half_up(upper),
        version=version,
    )


def aggregate_rows(
    rows: Iterable[SubmissionRow],
    day: str,
    formula: CompositeFormula = CompositeFormula(),
) -> List[AggregateRecord]:
    """One record per group that has at least one row."""
    return [aggregate_group(group_id, day, group, formula) for group_id, group in group_rows(rows).items()]
