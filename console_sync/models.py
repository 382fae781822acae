"""
Data models shared by the synchronization layer.

JobRecord mirrors what the backend reports for a background job; the
layer only cares about whether a job is still running.
"""
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Union

from console_sync.utils.helpers import safe_lower, safe_str


class JobStatus(Enum):
    """Lifecycle states of a backend job. RUNNING is the only non-terminal one."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.RUNNING


@dataclass
class JobRecord:
    """A single background job as reported by the jobs endpoint."""
    id: str
    name: str
    status: JobStatus
    started_at: str
    completed_at: Optional[str] = None
    result: Optional[Any] = None
    error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.status is JobStatus.RUNNING

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], job_id: Optional[str] = None) -> "JobRecord":
        """
        Build a JobRecord from an API payload.

        Unknown statuses are treated as failed so a malformed record can
        never keep the console in fast-poll mode forever.
        """
        raw_status = safe_lower(data.get("status"))
        try:
            status = JobStatus(raw_status)
        except ValueError:
            status = JobStatus.FAILED
        return cls(
            id=safe_str(job_id if job_id is not None else data.get("id")),
            name=safe_str(data.get("name")),
            status=status,
            started_at=safe_str(data.get("started_at")),
            completed_at=data.get("completed_at"),
            result=data.get("result"),
            error=data.get("error"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "result": self.result,
            "error": self.error,
        }


JobLike = Union[JobRecord, Mapping[str, Any]]


def _status_of(job: JobLike) -> str:
    if isinstance(job, JobRecord):
        return job.status.value
    return safe_lower(job.get("status"))


def has_running_jobs(jobs: Optional[Union[Iterable[JobLike], Mapping[str, JobLike]]]) -> bool:
    """
    Check whether any job in a collection is still running.

    Accepts a list of records or the jobs endpoint's id -> record mapping.
    """
    if not jobs:
        return False
    if isinstance(jobs, Mapping):
        jobs = jobs.values()
    return any(_status_of(job) == JobStatus.RUNNING.value for job in jobs)


def make_query_key(feature: str, params: Optional[Mapping[str, Any]] = None) -> str:
    """
    Generate a stable query key from a feature name and its parameters.

    None and empty-string parameters are dropped and the rest are sorted,
    so two requests that mean the same thing always share a key.
    """
    cleaned = {
        k: v for k, v in (params or {}).items()
        if v is not None and v != ""
    }
    if not cleaned:
        return feature
    return f"{feature}:{json.dumps(cleaned, sort_keys=True, default=str)}"
