"""Analysis service: validates submissions, starts runs and exposes job state."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

from deckmemo.ai.orchestrator import PipelineOrchestrator, RunContext
from deckmemo.core.exceptions import AuthorizationError, JobConflictError, NotFoundError, ValidationError
from deckmemo.jobs.models import JobRecord, StepLogRecord
from deckmemo.jobs.progress import STEP_FAILED
from deckmemo.jobs.runner import RunRegistry
from deckmemo.storage.change_feed import ChangeFeed, FeedSubscription
from deckmemo.storage.documents import DocumentStore
from deckmemo.storage.documents_repo import DocumentRecord, DocumentsRepository
from deckmemo.storage.jobs_repo import JobsRepository
from deckmemo.streaming.relay import ChunkBroadcast, Subscription
from deckmemo.utils.ids import generate_document_id, generate_job_id, now_iso

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF-"
INTERRUPTED_MESSAGE = "Analysis was interrupted by a restart"


@dataclass
class SubmittedAnalysis:
  """A freshly started run plus the live subscription opened before it began."""

  job: JobRecord
  subscription: Subscription


class AnalysisService:
  """Entry points behind the HTTP routes."""

  def __init__(self, *, jobs_repo: JobsRepository, documents_repo: DocumentsRepository, document_store: DocumentStore, orchestrator: PipelineOrchestrator, runner: RunRegistry, change_feed: ChangeFeed, max_document_bytes: int) -> None:
    self._jobs_repo = jobs_repo
    self._documents_repo = documents_repo
    self._document_store = document_store
    self._orchestrator = orchestrator
    self._runner = runner
    self._change_feed = change_feed
    self._max_document_bytes = max_document_bytes

  @property
  def runner(self) -> RunRegistry:
    return self._runner

  @property
  def max_document_bytes(self) -> int:
    return self._max_document_bytes

  async def fail_interrupted_runs(self) -> int:
    """Fail jobs left active by a previous process so their keys accept new submissions."""
    failed = await self._jobs_repo.fail_active_jobs(error_message=INTERRUPTED_MESSAGE, current_step=STEP_FAILED, completed_at=now_iso())
    if failed:
      logger.warning("Failed %d analyses interrupted by a restart job_ids=%s", len(failed), ",".join(record.job_id for record in failed))
    return len(failed)

  async def upload_document(self, *, user_id: str, job_key: str, file_name: str, content_type: str, data: bytes) -> DocumentRecord:
    """Store an uploaded deck and its metadata row."""
    if not job_key.strip():
      raise ValidationError("jobKey must not be empty")
    if not data:
      raise ValidationError("Document body is empty")
    if len(data) > self._max_document_bytes:
      raise ValidationError(f"Document exceeds the {self._max_document_bytes} byte limit")
    if not data.startswith(PDF_MAGIC):
      raise ValidationError("Only PDF documents are supported")

    document_id = generate_document_id()
    storage_path = await self._document_store.put(f"{user_id}/{document_id}.pdf", data)
    record = DocumentRecord(document_id=document_id, user_id=user_id, job_key=job_key, file_name=file_name or f"{document_id}.pdf", storage_path=storage_path, content_type=content_type or "application/pdf", size_bytes=len(data), created_at=now_iso())
    await self._documents_repo.create_document(record)
    logger.info("Document uploaded document_id=%s job_key=%s bytes=%d", document_id, job_key, len(data))
    return record

  async def submit(self, *, user_id: str, document_ref: str, job_key: str, notes: str | None = None) -> SubmittedAnalysis:
    """Create a pending job, subscribe to its live relay and start the run in the background."""
    document = await self._documents_repo.get_document(document_ref)
    if document is None:
      raise NotFoundError(f"Document {document_ref} not found")
    if document.user_id != user_id:
      raise AuthorizationError("You do not have access to this document")
    if document.job_key != job_key:
      raise ValidationError(f"Document {document_ref} does not belong to {job_key}")

    # Reject early with a clear message; the repository enforces the same rule atomically.
    active = await self._jobs_repo.find_active_for_key(job_key)
    if active is not None:
      raise JobConflictError(f"An analysis is already running for {job_key} (job {active.job_id})")

    timestamp = now_iso()
    record = JobRecord(job_id=generate_job_id(), job_key=job_key, document_ref=document_ref, user_id=user_id, status="pending", created_at=timestamp, updated_at=timestamp, current_step="Queued")
    await self._jobs_repo.create_job(record)

    broadcast = ChunkBroadcast(job_id=record.job_id)
    subscription = broadcast.subscribe()
    context = RunContext(job_id=record.job_id, user_id=user_id, notes=notes, broadcast=broadcast)
    self._runner.start(record.job_id, self._orchestrator.run(document_ref, job_key, context))
    logger.info("Analysis submitted job_id=%s job_key=%s document_ref=%s", record.job_id, job_key, document_ref)
    return SubmittedAnalysis(job=record, subscription=subscription)

  async def get_latest(self, *, user_id: str, job_key: str) -> JobRecord:
    """Return the latest job for a key owned by the caller."""
    record = await self._jobs_repo.get_latest_for_key(job_key)
    if record is None:
      raise NotFoundError(f"No analysis found for {job_key}")
    if record.user_id != user_id:
      raise AuthorizationError("You do not have access to this analysis")
    return record

  async def list_step_logs(self, *, user_id: str, job_key: str) -> tuple[JobRecord, list[StepLogRecord]]:
    """Return the latest job for a key and its workflow step logs."""
    record = await self.get_latest(user_id=user_id, job_key=job_key)
    return record, await self._jobs_repo.list_step_logs(record.job_id)

  async def watch(self, *, user_id: str, job_key: str) -> AsyncIterator[JobRecord]:
    """Yield the current record and then every change until the job is terminal.

    Ownership is checked before the first yield so callers can surface errors before streaming.
    """
    subscription = self._change_feed.subscribe(job_key)
    try:
      current = await self.get_latest(user_id=user_id, job_key=job_key)
    except Exception:
      subscription.close()
      raise
    return self._watch_from(subscription, current)

  async def _watch_from(self, subscription: FeedSubscription, current: JobRecord) -> AsyncIterator[JobRecord]:
    async with subscription:
      yield current
      if current.is_terminal:
        return
      async for record in subscription:
        if record.job_id != current.job_id:
          continue
        yield record
        if record.is_terminal:
          return
