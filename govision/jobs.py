"""
Job state
=========

``JobStore`` is the single in-memory source of truth for every job the
session knows about: provisional uploads, queued and pending jobs, and
finished ones.  The upload pipeline creates and replaces records, the
polling engine merges server updates into them, and the table/renderer
only read.

Updates go through ``JobPatch``: every field is optional and ``None``
means "leave as is", so two concurrent merges touching different fields
never overwrite each other.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field, fields, replace
from typing import Optional

import pandas as pd
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

UPLOADING = "uploading"
QUEUED = "queued"
PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"

TERMINAL_STATUSES = frozenset({COMPLETED, FAILED})

TRUNCATE_ID = 22
TRUNCATE_FILE = 22


@dataclass(frozen=True)
class Detection:
    """One predicted region, center-based, in image pixels."""
    class_id: int
    class_label: str
    confidence: float
    center_x: float
    center_y: float
    width: float
    height: float


class PredictionPayload(BaseModel):
    """Wire form of a detection as returned by ``GET /jobs/{id}``.

    ``null`` and non-finite numbers (``NaN``/``Infinity`` slip through
    ``requests``' JSON decoder) read as the field default.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore", allow_inf_nan=False)

    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0
    confidence: float = 0.0
    class_label: str = Field(default="object", alias="class")
    class_id: int = 0

    @field_validator("x", "y", "width", "height", "confidence", "class_id", mode="before")
    @classmethod
    def _number_or_zero(cls, v):
        if v is None or (isinstance(v, float) and not math.isfinite(v)):
            return 0
        return v

    @field_validator("class_label", mode="before")
    @classmethod
    def _label_or_default(cls, v):
        return "object" if v is None else v

    def to_detection(self) -> Detection:
        return Detection(
            class_id=self.class_id,
            class_label=self.class_label or "object",
            confidence=self.confidence,
            center_x=self.x,
            center_y=self.y,
            width=self.width,
            height=self.height,
        )


def parse_predictions(raw) -> list[Detection]:
    """Turn a ``predictions`` array into detections, dropping malformed entries."""
    detections = []
    for item in raw or []:
        if not isinstance(item, dict):
            continue
        try:
            detections.append(PredictionPayload.model_validate(item).to_detection())
        except PydanticValidationError:
            continue
    return detections


@dataclass
class Job:
    id: str
    file_name: str = ""
    status: str = QUEUED
    image_url: Optional[str] = None
    detections: list[Detection] = field(default_factory=list)
    error: Optional[str] = None
    downloaded: bool = False
    created_at: float = field(default_factory=time.time)
    is_provisional: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_pending(self) -> bool:
        return not self.is_provisional and not self.is_terminal


@dataclass
class JobPatch:
    """Partial update for a Job.  ``None`` fields are left untouched."""
    file_name: Optional[str] = None
    status: Optional[str] = None
    image_url: Optional[str] = None
    detections: Optional[list[Detection]] = None
    error: Optional[str] = None
    downloaded: Optional[bool] = None
    is_provisional: Optional[bool] = None

    def apply(self, job: Job) -> Job:
        changes = {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }
        return replace(job, **changes)


class JobStore:
    """Mapping of job id -> Job for the lifetime of one session."""

    def __init__(self):
        self._jobs: dict[str, Job] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def set(self, job: Job) -> Job:
        self._jobs[job.id] = job
        return job

    def merge(self, job_id: str, patch: JobPatch) -> Job:
        """Apply ``patch`` to the existing record, or to a default one."""
        current = self._jobs.get(job_id) or Job(id=job_id)
        merged = patch.apply(current)
        self._jobs[job_id] = merged
        return merged

    def delete(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    def replace(self, old_id: str, job: Job) -> Job:
        """Swap a record for another, possibly under a different id."""
        self.delete(old_id)
        return self.set(job)

    def pending_ids(self) -> list[str]:
        return [jid for jid, job in self._jobs.items() if job.is_pending]

    def entries(self) -> list[Job]:
        """All jobs, newest first."""
        return sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)


# ---------------------------------------------------------------------------
#  Table view
# ---------------------------------------------------------------------------

def truncate(value: str, max_len: int) -> str:
    return value if len(value) <= max_len else value[: max_len - 1] + "…"


def _result_text(job: Job) -> str:
    if job.status == COMPLETED:
        return "view"
    if job.status == FAILED:
        return job.error or "Error"
    return "—"


def jobs_table(store: JobStore) -> pd.DataFrame:
    """One row per job, newest first, the columns the dashboard shows."""
    rows = [
        {
            "id": "..." if job.is_provisional else truncate(job.id, TRUNCATE_ID),
            "file": truncate(job.file_name, TRUNCATE_FILE),
            "status": job.status,
            "detections": str(len(job.detections)) if job.status == COMPLETED else "—",
            "result": _result_text(job),
        }
        for job in store.entries()
    ]
    return pd.DataFrame(rows, columns=["id", "file", "status", "detections", "result"])
