# ─────────────────────────────────────────────────────────────────────────────
# Job Store: in-memory job table
# ─────────────────────────────────────────────────────────────────────────────
# One writer per job (its pipeline task); any number of readers (status
# polls). Reads hand out deep copies so a poll never observes a half-applied
# merge and callers can't mutate stored state by accident.
#
# Not durable. Entries live until process exit unless job_ttl_seconds > 0,
# in which case terminal jobs older than the TTL are swept on create().
# ─────────────────────────────────────────────────────────────────────────────

import time
import uuid
from typing import Any, Callable

import structlog

from worldgen.exceptions import JobNotFoundError
from worldgen.schemas import Job, JobStatus

logger = structlog.get_logger(__name__)


def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"


class JobStore:
    """Table of job id → Job with create / get / merge."""

    def __init__(self, ttl_seconds: float = 0.0, clock: Callable[[], float] = time.time) -> None:
        self._jobs: dict[str, Job] = {}
        self._ttl = ttl_seconds
        self._clock = clock

    def create(self, job: Job) -> str:
        if job.job_id in self._jobs:
            raise ValueError(f"Job '{job.job_id}' already exists")
        if self._ttl > 0:
            self.sweep()
        self._jobs[job.job_id] = job.model_copy(deep=True)
        logger.info("job_created", job_id=job.job_id, owner=job.owner, quality=job.quality.value)
        return job.job_id

    def get(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job is not None else None

    def require(self, job_id: str) -> Job:
        job = self.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def merge(self, job_id: str, **fields: Any) -> Job:
        """Shallow field overwrite; later writes win.

        A job that has reached a terminal status keeps it: a status change
        away from complete/error/cancelled is dropped and logged. Other
        fields still merge.
        """
        current = self._jobs.get(job_id)
        if current is None:
            raise JobNotFoundError(job_id)

        if "status" in fields:
            fields["status"] = JobStatus(fields["status"])
        new_status = fields.get("status")
        if (
            new_status is not None
            and current.status.is_terminal
            and new_status != current.status
        ):
            logger.warning(
                "terminal_status_overwrite_ignored",
                job_id=job_id,
                current=current.status.value,
                attempted=new_status.value,
            )
            fields = {k: v for k, v in fields.items() if k != "status"}

        updated = current.model_copy(update=fields, deep=True)
        self._jobs[job_id] = updated
        return updated.model_copy(deep=True)

    def list_jobs(self) -> list[Job]:
        return [job.model_copy(deep=True) for job in self._jobs.values()]

    def sweep(self) -> int:
        """Evict terminal jobs that completed more than ``ttl`` seconds ago."""
        if self._ttl <= 0:
            return 0
        cutoff = self._clock() - self._ttl
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.status.is_terminal and job.completed_at is not None and job.completed_at < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            logger.info("jobs_evicted", count=len(expired))
        return len(expired)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)
