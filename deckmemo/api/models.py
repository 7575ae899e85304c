from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictStr

from deckmemo.jobs.models import JobRecord, JobStatus, StepLogRecord, StepName, StepStatus
from deckmemo.storage.documents_repo import DocumentRecord

MAX_NOTES_CHARS = 4000


class SubmitAnalysisRequest(BaseModel):
  """Request payload that starts an analysis for an uploaded deck."""

  document_ref: StrictStr = Field(alias="documentRef", min_length=1, description="Identifier of the uploaded deck.")
  job_key: StrictStr = Field(alias="jobKey", min_length=1, description="Identifier of the deal the analysis belongs to.")
  notes: StrictStr | None = Field(default=None, max_length=MAX_NOTES_CHARS, description="Optional analyst notes passed to the memo writer.")
  model_config = ConfigDict(extra="forbid", populate_by_name=True)


class AnalysisResponse(BaseModel):
  """Latest known state of an analysis job."""

  job_id: StrictStr
  job_key: StrictStr
  document_ref: StrictStr
  status: JobStatus
  progress_percent: int
  current_step: StrictStr | None = None
  quick_facts: dict[str, Any] | None = None
  result: dict[str, Any] | None = None
  error_message: StrictStr | None = None
  started_at: StrictStr | None = None
  completed_at: StrictStr | None = None
  created_at: StrictStr
  updated_at: StrictStr

  @classmethod
  def from_record(cls, record: JobRecord) -> AnalysisResponse:
    return cls(
      job_id=record.job_id,
      job_key=record.job_key,
      document_ref=record.document_ref,
      status=record.status,
      progress_percent=record.progress_percent,
      current_step=record.current_step,
      quick_facts=record.quick_facts,
      result=record.result,
      error_message=record.error_message,
      started_at=record.started_at,
      completed_at=record.completed_at,
      created_at=record.created_at,
      updated_at=record.updated_at,
    )


class StepLogResponse(BaseModel):
  """One attempt of one pipeline stage."""

  id: StrictStr
  step_name: StepName
  attempt: int
  status: StepStatus
  input: dict[str, Any] | None = None
  output: dict[str, Any] | None = None
  error_message: StrictStr | None = None
  started_at: StrictStr
  completed_at: StrictStr | None = None
  duration_ms: int | None = None

  @classmethod
  def from_record(cls, record: StepLogRecord) -> StepLogResponse:
    return cls(
      id=record.id,
      step_name=record.step_name,
      attempt=record.attempt,
      status=record.status,
      input=record.input,
      output=record.output,
      error_message=record.error_message,
      started_at=record.started_at,
      completed_at=record.completed_at,
      duration_ms=record.duration_ms,
    )


class StepLogListResponse(BaseModel):
  job_id: StrictStr
  job_key: StrictStr
  status: JobStatus
  logs: list[StepLogResponse]


class DocumentResponse(BaseModel):
  """Metadata for an uploaded deck."""

  document_id: StrictStr
  job_key: StrictStr
  file_name: StrictStr
  content_type: StrictStr
  size_bytes: int
  created_at: StrictStr

  @classmethod
  def from_record(cls, record: DocumentRecord) -> DocumentResponse:
    return cls(document_id=record.document_id, job_key=record.job_key, file_name=record.file_name, content_type=record.content_type, size_bytes=record.size_bytes, created_at=record.created_at)
