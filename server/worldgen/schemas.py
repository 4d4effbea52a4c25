# ─────────────────────────────────────────────────────────────────────────────
# Schemas: job state, progress events, and HTTP response bodies
# ─────────────────────────────────────────────────────────────────────────────
# Wire format is camelCase (what the browser client reads); Python attributes
# stay snake_case. populate_by_name lets internal code construct by field name.
# ─────────────────────────────────────────────────────────────────────────────

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Enums ────────────────────────────────────────────────────────────────────


class JobStatus(str, Enum):
    QUEUED = "queued"
    ORCHESTRATING = "orchestrating"
    GENERATING_IMAGE = "generating_image"
    CREATING_WORLD = "creating_world"
    LOADING_RESULT = "loading_result"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETE, JobStatus.ERROR, JobStatus.CANCELLED})


class Quality(str, Enum):
    """Requested generation tier. Drives the world prompt wording."""

    QUICK = "quick"
    STANDARD = "standard"
    PREMIUM = "premium"


# ── Job ──────────────────────────────────────────────────────────────────────


class JobResult(_CamelModel):
    world_url: str | None = None
    world_url_low_res: str | None = None
    collider_mesh_url: str | None = None
    world_id: str | None = None
    operation_id: str | None = None
    preview_image_base64: str | None = None
    preview_image_mime: str | None = None


class Job(_CamelModel):
    """One end-to-end world generation request.

    Written only by the job's own pipeline task after creation; read
    concurrently by status polls through JobStore snapshots.
    """

    job_id: str
    status: JobStatus = JobStatus.QUEUED
    concept: str
    quality: Quality = Quality.STANDARD
    owner: str
    privileged: bool = False
    credits_charged: int = 0
    progress: int = 0
    stage_message: str = ""
    content: dict[str, Any] = Field(default_factory=dict)
    result: JobResult | None = None
    error: str | None = None
    cancel_requested: bool = False
    created_at: float = Field(default_factory=time.time)
    completed_at: float | None = None


# ── Progress events ──────────────────────────────────────────────────────────


class ProgressEvent(_CamelModel):
    """Transient broadcast of a job's current stage and percent."""

    job_id: str
    stage: str
    progress: int = Field(ge=0, le=100)
    message: str
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))
    details: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        """Flatten to ``{jobId, stage, progress, message, timestamp, ...payload}``."""
        data: dict[str, Any] = {
            "jobId": self.job_id,
            "stage": self.stage,
            "progress": self.progress,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.details is not None:
            data["details"] = self.details
        data.update(self.payload)
        return data

    @property
    def is_terminal(self) -> bool:
        return self.stage in {s.value for s in TERMINAL_STATUSES}


# ── HTTP bodies ──────────────────────────────────────────────────────────────


class StartJobResponse(_CamelModel):
    job_id: str
    status: str = "started"
    credits_remaining: int | None = None


class CancelJobResponse(_CamelModel):
    job_id: str
    status: JobStatus


class LivenessResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    world_service_configured: bool
    ledger_backend: str
    active_jobs: int
