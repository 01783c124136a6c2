"""Pydantic models for the remote job backend and job history."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

RemoteStatus = Literal["running", "completed", "error"]

_COMPLETED_ALIASES = {"completed", "complete", "succeeded", "success", "done"}
_ERROR_ALIASES = {"error", "failed", "failure", "cancelled", "canceled"}


class JobSubmission(BaseModel):
    """Handle returned when a job is created."""

    job_handle: str
    live_view_ref: str | None = None


class JobStatus(BaseModel):
    """Current status of a remote job."""

    status: RemoteStatus
    live_view_ref: str | None = None
    output: Any = None
    error_message: str | None = None
    events_observed: int = Field(default=0, ge=0)
    progress_hint: int | None = Field(default=None, ge=0, le=100)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> str:
        normalized = str(value or "").strip().lower()
        if normalized in _COMPLETED_ALIASES:
            return "completed"
        if normalized in _ERROR_ALIASES:
            return "error"
        return "running"

    @property
    def is_terminal(self) -> bool:
        return self.status != "running"


class PersistedJob(BaseModel):
    """Stored job history record."""

    id: str
    query: str
    status: Literal["configuring", "running", "complete", "error"]
    created_at: datetime
    completed_at: datetime | None = None
    total: int = 0
    completed: int = 0
    failed: int = 0
    state_json: str | None = None
