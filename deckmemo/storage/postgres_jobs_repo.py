"""Postgres-backed repositories for analysis jobs, step logs and deck metadata using SQLAlchemy."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from deckmemo.core.database import get_session_factory
from deckmemo.core.exceptions import JobConflictError
from deckmemo.jobs.models import ACTIVE_STATUSES, JobRecord, JobStatus, StepLogRecord, StepStatus, can_transition
from deckmemo.schema.analyses import Analysis, Document, WorkflowLog
from deckmemo.storage.documents_repo import DocumentRecord
from deckmemo.utils.ids import parse_iso, to_iso

logger = logging.getLogger(__name__)


def _parse_optional(value: str | None) -> datetime | None:
  if value is None:
    return None
  return parse_iso(value)


class PostgresJobsRepository:
  """Persist jobs and workflow step logs to Postgres."""

  def __init__(self) -> None:
    self._session_factory = get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def create_job(self, record: JobRecord) -> None:
    async with self._session_factory() as session:
      row = Analysis(
        job_id=record.job_id,
        job_key=record.job_key,
        document_ref=record.document_ref,
        user_id=record.user_id,
        status=record.status,
        progress_percent=record.progress_percent,
        current_step=record.current_step,
        created_at=parse_iso(record.created_at),
        updated_at=parse_iso(record.updated_at),
      )
      session.add(row)
      try:
        await session.commit()
      except IntegrityError as exc:
        await session.rollback()
        # The partial unique index rejects a second active job for the same key.
        if "ux_analyses_active_job_key" in str(exc.orig):
          raise JobConflictError(f"An analysis is already running for {record.job_key}") from exc
        raise

  async def get_job(self, job_id: str) -> JobRecord | None:
    async with self._session_factory() as session:
      row = await session.get(Analysis, job_id)
      if row is None:
        return None
      return self._model_to_record(row)

  async def get_latest_for_key(self, job_key: str) -> JobRecord | None:
    async with self._session_factory() as session:
      stmt = select(Analysis).where(Analysis.job_key == job_key).order_by(Analysis.created_at.desc()).limit(1)
      row = (await session.execute(stmt)).scalar_one_or_none()
      if row is None:
        return None
      return self._model_to_record(row)

  async def find_active_for_key(self, job_key: str) -> JobRecord | None:
    async with self._session_factory() as session:
      stmt = select(Analysis).where(Analysis.job_key == job_key, Analysis.status.in_(ACTIVE_STATUSES)).limit(1)
      row = (await session.execute(stmt)).scalar_one_or_none()
      if row is None:
        return None
      return self._model_to_record(row)

  async def claim_job(self, job_id: str, *, current_step: str, progress_percent: int, started_at: str) -> JobRecord | None:
    async with self._session_factory() as session:
      now = datetime.now(UTC)
      stmt = (
        update(Analysis)
        .where(Analysis.job_id == job_id, Analysis.status == "pending")
        .values(status="processing", current_step=current_step, progress_percent=progress_percent, started_at=parse_iso(started_at), updated_at=now)
        .returning(Analysis)
      )
      row = (await session.execute(stmt)).scalar_one_or_none()
      await session.commit()
      if row is None:
        return None
      return self._model_to_record(row)

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
    async with self._session_factory() as session:
      # Lock the row so the terminal check and the write happen as one step.
      stmt = select(Analysis).where(Analysis.job_id == job_id).with_for_update()
      row = (await session.execute(stmt)).scalar_one_or_none()
      if row is None:
        return None
      target_status = status or row.status
      if not can_transition(row.status, target_status):
        logger.warning("Rejected job write job_id=%s current_status=%s requested_status=%s", job_id, row.status, target_status)
        await session.rollback()
        return None
      row.status = target_status
      if progress_percent is not None:
        row.progress_percent = max(row.progress_percent, progress_percent)
      if current_step is not None:
        row.current_step = current_step
      if quick_facts is not None and row.quick_facts is None:
        row.quick_facts = quick_facts
      if result is not None and row.result is None:
        row.result = result
      if error_message is not None and row.error_message is None:
        row.error_message = error_message
      if completed_at is not None and row.completed_at is None:
        row.completed_at = parse_iso(completed_at)
      row.updated_at = datetime.now(UTC)
      await session.commit()
      await session.refresh(row)
      return self._model_to_record(row)

  async def fail_active_jobs(self, *, error_message: str, current_step: str, completed_at: str) -> list[JobRecord]:
    async with self._session_factory() as session:
      finished_at = parse_iso(completed_at)
      stmt = (
        update(Analysis)
        .where(Analysis.status.in_(ACTIVE_STATUSES))
        .values(
          status="failed",
          current_step=current_step,
          error_message=func.coalesce(Analysis.error_message, error_message),
          completed_at=func.coalesce(Analysis.completed_at, finished_at),
          updated_at=datetime.now(UTC),
        )
        .returning(Analysis)
      )
      rows = (await session.execute(stmt)).scalars().all()
      job_ids = [row.job_id for row in rows]
      if job_ids:
        await session.execute(
          update(WorkflowLog)
          .where(WorkflowLog.job_id.in_(job_ids), WorkflowLog.completed_at.is_(None))
          .values(status="error", completed_at=finished_at, error_message=func.coalesce(WorkflowLog.error_message, error_message))
        )
      await session.commit()
      return [self._model_to_record(row) for row in rows]

  async def append_step_log(self, record: StepLogRecord) -> None:
    async with self._session_factory() as session:
      row = WorkflowLog(
        id=record.id,
        job_id=record.job_id,
        job_key=record.job_key,
        step_name=record.step_name,
        attempt=record.attempt,
        status=record.status,
        input=record.input,
        output=record.output,
        error_message=record.error_message,
        started_at=parse_iso(record.started_at),
        completed_at=_parse_optional(record.completed_at),
        duration_ms=record.duration_ms,
      )
      session.add(row)
      await session.commit()

  async def close_step_log(self, log_id: str, *, status: StepStatus, completed_at: str, duration_ms: int, output: dict[str, Any] | None = None, error_message: str | None = None) -> StepLogRecord | None:
    async with self._session_factory() as session:
      stmt = (
        update(WorkflowLog)
        .where(WorkflowLog.id == log_id, WorkflowLog.completed_at.is_(None))
        .values(status=status, completed_at=parse_iso(completed_at), duration_ms=duration_ms, output=output, error_message=error_message)
        .returning(WorkflowLog)
      )
      row = (await session.execute(stmt)).scalar_one_or_none()
      await session.commit()
      if row is None:
        return None
      return self._log_to_record(row)

  async def list_step_logs(self, job_id: str) -> list[StepLogRecord]:
    async with self._session_factory() as session:
      stmt = select(WorkflowLog).where(WorkflowLog.job_id == job_id).order_by(WorkflowLog.started_at.asc(), WorkflowLog.attempt.asc())
      rows = (await session.execute(stmt)).scalars().all()
      return [self._log_to_record(row) for row in rows]

  def _model_to_record(self, row: Analysis) -> JobRecord:
    return JobRecord(
      job_id=row.job_id,
      job_key=row.job_key,
      document_ref=row.document_ref,
      user_id=row.user_id,
      status=row.status,  # type: ignore[arg-type]
      progress_percent=row.progress_percent,
      current_step=row.current_step,
      quick_facts=row.quick_facts,
      result=row.result,
      error_message=row.error_message,
      created_at=to_iso(row.created_at) or "",
      updated_at=to_iso(row.updated_at) or "",
      started_at=to_iso(row.started_at),
      completed_at=to_iso(row.completed_at),
    )

  def _log_to_record(self, row: WorkflowLog) -> StepLogRecord:
    return StepLogRecord(
      id=row.id,
      job_id=row.job_id,
      job_key=row.job_key,
      step_name=row.step_name,  # type: ignore[arg-type]
      attempt=row.attempt,
      status=row.status,  # type: ignore[arg-type]
      input=row.input,
      output=row.output,
      error_message=row.error_message,
      started_at=to_iso(row.started_at) or "",
      completed_at=to_iso(row.completed_at),
      duration_ms=row.duration_ms,
    )


class PostgresDocumentsRepository:
  """Persist deck metadata to Postgres."""

  def __init__(self) -> None:
    self._session_factory = get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def create_document(self, record: DocumentRecord) -> None:
    async with self._session_factory() as session:
      row = Document(
        document_id=record.document_id,
        user_id=record.user_id,
        job_key=record.job_key,
        file_name=record.file_name,
        storage_path=record.storage_path,
        content_type=record.content_type,
        size_bytes=record.size_bytes,
        extracted_text=record.extracted_text,
        created_at=parse_iso(record.created_at),
      )
      session.add(row)
      await session.commit()

  async def get_document(self, document_id: str) -> DocumentRecord | None:
    async with self._session_factory() as session:
      row = await session.get(Document, document_id)
      if row is None:
        return None
      return DocumentRecord(
        document_id=row.document_id,
        user_id=row.user_id,
        job_key=row.job_key,
        file_name=row.file_name,
        storage_path=row.storage_path,
        content_type=row.content_type,
        size_bytes=row.size_bytes,
        created_at=to_iso(row.created_at) or "",
        extracted_text=row.extracted_text,
      )

  async def set_extracted_text(self, document_id: str, text: str) -> None:
    async with self._session_factory() as session:
      await session.execute(update(Document).where(Document.document_id == document_id).values(extracted_text=text))
      await session.commit()
