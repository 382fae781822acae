"""
Chart-ready series derived from raw console snapshots.

Pure functions only: no I/O, no clocks, no mutation of the inputs. The
same input always produces the same output.
"""
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from console_sync.models import JobRecord, JobStatus
from console_sync.utils.helpers import pick_field, safe_float, safe_int, safe_lower, safe_timestamp

COST_FIELDS = ("cost", "generation_cost_usd")
TIMESTAMP_FIELDS = ("created_at", "published_at")

VIRALITY_HIGH_THRESHOLD = 7
VIRALITY_MEDIUM_THRESHOLD = 4
VIRALITY_BUCKETS = ("high", "medium", "low")


@dataclass(frozen=True)
class CostPoint:
    """One point of the cost trend chart."""
    index: int
    cost: float
    date: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {"index": self.index, "cost": self.cost, "date": self.date}


def _record_date(record: Mapping[str, Any]) -> Optional[str]:
    # Creation time preferred, publish time as fallback
    value = pick_field(record, *TIMESTAMP_FIELDS)
    return None if value is None else str(value)


def derive_cost_trend(records: Iterable[Mapping[str, Any]], max_points: int = 30) -> List[CostPoint]:
    """
    Build the cost trend series.

    Keeps records with a positive cost, orders them oldest first by
    creation (or publish) time, with missing timestamps sorting as the
    epoch, and keeps the most recent max_points. Ties keep input order.

    Args:
        records: Item records, flat or with a nested "payload"
        max_points: Upper bound on the number of points

    Returns:
        Points numbered from 1, oldest first
    """
    costed = []
    for record in records:
        cost = safe_float(pick_field(record, *COST_FIELDS))
        if cost > 0:
            date = _record_date(record)
            costed.append((safe_timestamp(date), cost, date))

    costed.sort(key=lambda point: point[0])
    if max_points <= 0:
        return []
    recent = costed[-max_points:]

    return [
        CostPoint(index=i, cost=cost, date=date)
        for i, (_ts, cost, date) in enumerate(recent, start=1)
    ]


def derive_distribution(
    records: Iterable[Any],
    classifier: Callable[[Any], str],
    buckets: Iterable[str] = (),
) -> Dict[str, int]:
    """
    Count records per bucket label.

    Args:
        records: Any records the classifier understands
        classifier: Total function from a record to its bucket label
        buckets: Labels to report even when empty, in display order

    Returns:
        Mapping of bucket label to count
    """
    counts: Dict[str, int] = {label: 0 for label in buckets}
    for record in records:
        label = classifier(record)
        counts[label] = counts.get(label, 0) + 1
    return counts


def classify_virality(score: Any) -> str:
    """Bucket a virality score: >= 7 high, >= 4 medium, anything else low."""
    value = safe_float(score)
    if value >= VIRALITY_HIGH_THRESHOLD:
        return "high"
    if value >= VIRALITY_MEDIUM_THRESHOLD:
        return "medium"
    return "low"


def classify_record_virality(record: Mapping[str, Any]) -> str:
    return classify_virality(pick_field(record, "virality_score"))


def classify_status(record: Any) -> str:
    """Bucket a record by its status field."""
    if isinstance(record, JobRecord):
        return record.status.value
    status = safe_lower(pick_field(record, "status"))
    return status or "unknown"


def virality_distribution(records: Iterable[Mapping[str, Any]]) -> Dict[str, int]:
    """Count items per virality bucket; all three buckets are always present."""
    return derive_distribution(records, classify_record_virality, VIRALITY_BUCKETS)


def distribution_from_stats(stats: Optional[Mapping[str, Any]]) -> Dict[str, Dict[str, float]]:
    """
    Virality bars from the server's aggregate counters.

    Returns:
        {"high": {"count": n, "percent": p}, ...} with percentages of
        total_items; a zero or missing total gives 0 percent
    """
    stats = stats or {}
    total = safe_int(stats.get("total_items"))
    result: Dict[str, Dict[str, float]] = {}
    for bucket in VIRALITY_BUCKETS:
        count = safe_int(stats.get(f"{bucket}_virality"))
        percent = (count / total * 100) if total > 0 else 0.0
        result[bucket] = {"count": count, "percent": round(percent, 1)}
    return result


def summarize_jobs(jobs: Any) -> Dict[str, int]:
    """
    Count jobs per status.

    Accepts the jobs endpoint's id -> record mapping or a list of records.
    """
    if isinstance(jobs, Mapping):
        jobs = jobs.values()
    buckets = [status.value for status in JobStatus]
    return derive_distribution(jobs or [], classify_status, buckets)
