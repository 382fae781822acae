"""
Pure metric derivations for console charts.
"""
from .deriver import (
    CostPoint,
    VIRALITY_BUCKETS,
    derive_cost_trend,
    derive_distribution,
    classify_virality,
    classify_record_virality,
    classify_status,
    virality_distribution,
    distribution_from_stats,
    summarize_jobs,
)

__all__ = [
    "CostPoint",
    "VIRALITY_BUCKETS",
    "derive_cost_trend",
    "derive_distribution",
    "classify_virality",
    "classify_record_virality",
    "classify_status",
    "virality_distribution",
    "distribution_from_stats",
    "summarize_jobs",
]
