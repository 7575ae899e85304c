"""Storage interfaces for analysis jobs and workflow step logs."""

from __future__ import annotations

from typing import Any, Protocol

from deckmemo.jobs.models import JobRecord, JobStatus, StepLogRecord, StepStatus


class JobsRepository(Protocol):
  """Repository contract for job persistence.

  Every job write is guarded: it is applied only while the stored job is non-terminal
  and the requested status change is allowed. Rejected writes return ``None``.
  Progress writes never lower the stored value and ``quick_facts`` is set at most once.
  """

  async def create_job(self, record: JobRecord) -> None:
    """Persist a new pending job; raises JobConflictError if the key already has an active job."""

  async def get_job(self, job_id: str) -> JobRecord | None:
    """Fetch a job by identifier."""

  async def get_latest_for_key(self, job_key: str) -> JobRecord | None:
    """Return the most recently created job for a job key."""

  async def find_active_for_key(self, job_key: str) -> JobRecord | None:
    """Return the non-terminal job for a job key, if any."""

  async def claim_job(self, job_id: str, *, current_step: str, progress_percent: int, started_at: str) -> JobRecord | None:
    """Atomically move a pending job to processing; returns None when the job is not pending."""

  async def update_job(
    self,
    job_id: str,
    *,
    status: JobStatus | None = None,
    progress_percent: int | None = None,
    current_step: str | None = None,
    quick_facts: dict[str, Any] | None = None,
    result: dict[str, Any] | None = None,
    error_message: str | None = None,
    completed_at: str | None = None,
  ) -> JobRecord | None:
    """Apply a guarded partial update to a job."""

  async def fail_active_jobs(self, *, error_message: str, current_step: str, completed_at: str) -> list[JobRecord]:
    """Fail every non-terminal job and close its open step logs; returns the failed jobs."""

  async def append_step_log(self, record: StepLogRecord) -> None:
    """Insert a step log row for a new stage attempt."""

  async def close_step_log(self, log_id: str, *, status: StepStatus, completed_at: str, duration_ms: int, output: dict[str, Any] | None = None, error_message: str | None = None) -> StepLogRecord | None:
    """Close an open step log row; rows that are already closed are left untouched."""

  async def list_step_logs(self, job_id: str) -> list[StepLogRecord]:
    """List step logs for a job in start order."""
