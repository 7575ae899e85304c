"""In-memory repositories used for local development without Postgres and by the test suite."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from deckmemo.core.exceptions import JobConflictError
from deckmemo.jobs.models import ACTIVE_STATUSES, JobRecord, JobStatus, StepLogRecord, StepStatus, can_transition
from deckmemo.storage.documents_repo import DocumentRecord
from deckmemo.utils.ids import now_iso

logger = logging.getLogger(__name__)


class InMemoryJobsRepository:
  """Process-local jobs repository with the same guarded-write rules as Postgres."""

  def __init__(self) -> None:
    self._jobs: dict[str, JobRecord] = {}
    self._logs: dict[str, StepLogRecord] = {}
    # Insertion order doubles as creation order for latest-per-key lookups.
    self._order: list[str] = []

  async def create_job(self, record: JobRecord) -> None:
    if await self.find_active_for_key(record.job_key) is not None:
      raise JobConflictError(f"An analysis is already running for {record.job_key}")
    self._jobs[record.job_id] = replace(record)
    self._order.append(record.job_id)

  async def get_job(self, job_id: str) -> JobRecord | None:
    record = self._jobs.get(job_id)
    return replace(record) if record is not None else None

  async def get_latest_for_key(self, job_key: str) -> JobRecord | None:
    for job_id in reversed(self._order):
      record = self._jobs[job_id]
      if record.job_key == job_key:
        return replace(record)
    return None

  async def find_active_for_key(self, job_key: str) -> JobRecord | None:
    for record in self._jobs.values():
      if record.job_key == job_key and record.status in ACTIVE_STATUSES:
        return replace(record)
    return None

  async def claim_job(self, job_id: str, *, current_step: str, progress_percent: int, started_at: str) -> JobRecord | None:
    record = self._jobs.get(job_id)
    if record is None or record.status != "pending":
      return None
    updated = replace(record, status="processing", current_step=current_step, progress_percent=max(record.progress_percent, progress_percent), started_at=started_at, updated_at=now_iso())
    self._jobs[job_id] = updated
    return replace(updated)

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
    record = self._jobs.get(job_id)
    if record is None:
      return None
    target_status = status or record.status
    if not can_transition(record.status, target_status):
      logger.warning("Rejected job write job_id=%s current_status=%s requested_status=%s", job_id, record.status, target_status)
      return None
    changes: dict[str, Any] = {"status": target_status, "updated_at": now_iso()}
    if progress_percent is not None:
      changes["progress_percent"] = max(record.progress_percent, progress_percent)
    if current_step is not None:
      changes["current_step"] = current_step
    if quick_facts is not None and record.quick_facts is None:
      changes["quick_facts"] = quick_facts
    if result is not None and record.result is None:
      changes["result"] = result
    if error_message is not None and record.error_message is None:
      changes["error_message"] = error_message
    if completed_at is not None and record.completed_at is None:
      changes["completed_at"] = completed_at
    updated = replace(record, **changes)
    self._jobs[job_id] = updated
    return replace(updated)

  async def fail_active_jobs(self, *, error_message: str, current_step: str, completed_at: str) -> list[JobRecord]:
    failed: list[JobRecord] = []
    for job_id, record in list(self._jobs.items()):
      if record.status not in ACTIVE_STATUSES:
        continue
      updated = replace(record, status="failed", current_step=current_step, error_message=record.error_message or error_message, completed_at=record.completed_at or completed_at, updated_at=now_iso())
      self._jobs[job_id] = updated
      failed.append(replace(updated))
    failed_ids = {record.job_id for record in failed}
    for log_id, log in list(self._logs.items()):
      if log.job_id in failed_ids and log.completed_at is None:
        self._logs[log_id] = replace(log, status="error", completed_at=completed_at, error_message=log.error_message or error_message)
    return failed

  async def append_step_log(self, record: StepLogRecord) -> None:
    self._logs[record.id] = replace(record)

  async def close_step_log(self, log_id: str, *, status: StepStatus, completed_at: str, duration_ms: int, output: dict[str, Any] | None = None, error_message: str | None = None) -> StepLogRecord | None:
    record = self._logs.get(log_id)
    if record is None or record.completed_at is not None:
      return None
    updated = replace(record, status=status, completed_at=completed_at, duration_ms=duration_ms, output=output, error_message=error_message)
    self._logs[log_id] = updated
    return replace(updated)

  async def list_step_logs(self, job_id: str) -> list[StepLogRecord]:
    return [replace(record) for record in self._logs.values() if record.job_id == job_id]


class InMemoryDocumentsRepository:
  """Process-local deck metadata repository."""

  def __init__(self) -> None:
    self._documents: dict[str, DocumentRecord] = {}

  async def create_document(self, record: DocumentRecord) -> None:
    self._documents[record.document_id] = replace(record)

  async def get_document(self, document_id: str) -> DocumentRecord | None:
    record = self._documents.get(document_id)
    return replace(record) if record is not None else None

  async def set_extracted_text(self, document_id: str, text: str) -> None:
    record = self._documents.get(document_id)
    if record is not None:
      self._documents[document_id] = replace(record, extracted_text=text)
