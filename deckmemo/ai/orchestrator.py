"""Pipeline orchestrator: extraction, quick facts, streamed memo synthesis and memo data finalization for one job."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass

from deckmemo.ai.providers.base import ExtractionClient, MemoDataClient, QuickFactsClient, SynthesisClient
from deckmemo.ai.results import Success
from deckmemo.ai.retry import RetryPolicy, invoke_with_retry
from deckmemo.ai.schemas import MemoData, QuickFacts, SynthesisRequest
from deckmemo.config import Settings
from deckmemo.core.exceptions import ExternalServiceError, JobConflictError, NotFoundError, ProtocolError, ValidationError
from deckmemo.jobs.models import StepName
from deckmemo.jobs.progress import (
  PROGRESS_COMPLETE,
  PROGRESS_CONTEXT_READY,
  PROGRESS_EXTRACTED,
  PROGRESS_FINALIZING,
  STEP_COMPLETED,
  STEP_EXTRACTING,
  STEP_FINALIZING,
  STEP_QUICK_FACTS,
  STEP_SYNTHESIZING,
  TOTAL_PIPELINE_STEPS,
  JobProgressTracker,
  JobSupersededError,
  SynthesisProgressEstimator,
)
from deckmemo.jobs.workflow_log import WorkflowStepLogger
from deckmemo.notifications.alerts import AlertSender, FailureAlert
from deckmemo.storage.documents import DocumentStore
from deckmemo.storage.documents_repo import DocumentsRepository
from deckmemo.storage.jobs_repo import JobsRepository
from deckmemo.streaming.relay import ChunkBroadcast, DoneEvent, ErrorEvent, QuickFactsEvent, RelayEvent, StatusEvent, TextEvent
from deckmemo.utils.ids import now_iso

logger = logging.getLogger(__name__)

SUPERSEDED_MESSAGE = "Analysis was superseded; its record was finalized elsewhere"


@dataclass(frozen=True)
class RunContext:
  """Caller-supplied context for one run."""

  job_id: str
  user_id: str
  notes: str | None = None
  broadcast: ChunkBroadcast | None = None


@dataclass(frozen=True)
class PipelineTimeouts:
  """Per-stage deadlines in seconds."""

  extraction: float = 300.0
  quick_facts: float = 30.0
  synthesis_open: float = 60.0
  synthesis_stream: float = 600.0
  memo_data: float = 60.0

  @classmethod
  def from_settings(cls, settings: Settings) -> PipelineTimeouts:
    return cls(extraction=settings.ocr_timeout_seconds, quick_facts=settings.quick_facts_timeout_seconds, synthesis_open=settings.synthesis_open_timeout_seconds, synthesis_stream=settings.synthesis_timeout_seconds, memo_data=settings.memo_data_timeout_seconds)


@dataclass
class _RunState:
  job_id: str
  job_key: str
  document_ref: str
  notes: str | None
  tracker: JobProgressTracker
  step_logger: WorkflowStepLogger
  broadcast: ChunkBroadcast | None
  stage: StepName = "extraction"

  def publish(self, event: RelayEvent) -> None:
    if self.broadcast is not None:
      self.broadcast.publish(event)


class PipelineOrchestrator:
  """Sequence the pipeline stages for a job and keep its record current."""

  def __init__(
    self,
    *,
    jobs_repo: JobsRepository,
    documents_repo: DocumentsRepository,
    document_store: DocumentStore,
    extraction_client: ExtractionClient,
    quick_facts_client: QuickFactsClient,
    synthesis_client: SynthesisClient,
    memo_data_client: MemoDataClient,
    retry_policy: RetryPolicy | None = None,
    timeouts: PipelineTimeouts | None = None,
    expected_memo_chars: int = 6000,
    progress_interval_seconds: float = 2.0,
    max_document_bytes: int = 50 * 1024 * 1024,
    alert_sender: AlertSender | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
  ) -> None:
    self._jobs_repo = jobs_repo
    self._documents_repo = documents_repo
    self._document_store = document_store
    self._extraction_client = extraction_client
    self._quick_facts_client = quick_facts_client
    self._synthesis_client = synthesis_client
    self._memo_data_client = memo_data_client
    self._retry_policy = retry_policy or RetryPolicy()
    self._timeouts = timeouts or PipelineTimeouts()
    self._expected_memo_chars = expected_memo_chars
    self._progress_interval_seconds = progress_interval_seconds
    self._max_document_bytes = max_document_bytes
    self._alert_sender = alert_sender
    self._sleep = sleep

  async def run(self, document_ref: str, job_key: str, context: RunContext) -> None:
    """Run the pipeline for a pending job; the outcome is observable through the jobs repository.

    Raises JobConflictError when the job is not pending, without executing anything.
    """
    try:
      record = await self._jobs_repo.get_job(context.job_id)
      if record is None:
        raise NotFoundError(f"Job {context.job_id} not found")
      if record.job_key != job_key or record.document_ref != document_ref:
        raise ValidationError(f"Job {context.job_id} does not belong to {job_key}/{document_ref}")

      tracker = JobProgressTracker(job_id=context.job_id, jobs_repo=self._jobs_repo)
      claimed = await tracker.claim(current_step=STEP_EXTRACTING)
      if claimed is None:
        raise JobConflictError(f"Job {context.job_id} is {record.status}; only pending jobs can run")

      state = _RunState(
        job_id=context.job_id,
        job_key=job_key,
        document_ref=document_ref,
        notes=context.notes,
        tracker=tracker,
        step_logger=WorkflowStepLogger(jobs_repo=self._jobs_repo, job_id=context.job_id, job_key=job_key),
        broadcast=context.broadcast,
      )
      logger.info("Run claimed job_id=%s job_key=%s", context.job_id, job_key)
      state.publish(StatusEvent(message=STEP_EXTRACTING, progress=tracker.percent, step=1, total_steps=TOTAL_PIPELINE_STEPS))

      try:
        await self._execute(state)
      except JobSupersededError as exc:
        logger.warning("Run stopped job_id=%s: %s", state.job_id, exc)
        state.publish(ErrorEvent(error=SUPERSEDED_MESSAGE))
      except asyncio.CancelledError:
        await self._fail(state, f"Analysis was interrupted during {state.stage}")
        raise
      except Exception as exc:  # noqa: BLE001
        logger.error("Unexpected pipeline error job_id=%s stage=%s", state.job_id, state.stage, exc_info=True)
        await self._fail(state, f"Unexpected error during {state.stage}: {type(exc).__name__}: {exc}")
    finally:
      if context.broadcast is not None:
        context.broadcast.close()

  async def _execute(self, state: _RunState) -> None:
    text = await self._extract(state)
    if text is None:
      return
    facts = await self._quick_facts(state, text)
    await self._synthesize(state, text, facts)

  async def _extract(self, state: _RunState) -> str | None:
    state.stage = "extraction"
    document = await self._documents_repo.get_document(state.document_ref)
    if document is None:
      await self._fail(state, f"Document {state.document_ref} not found")
      return None

    try:
      payload = await self._document_store.get(document.storage_path)
    except (NotFoundError, ValidationError) as exc:
      await self._fail(state, f"Could not read document: {exc.message}")
      return None

    if len(payload) > self._max_document_bytes:
      await self._fail(state, f"Document exceeds the {self._max_document_bytes} byte limit")
      return None

    observer = state.step_logger.observer("extraction", input={"document_ref": state.document_ref, "file_name": document.file_name, "size_bytes": len(payload)}, summarize=lambda text: {"chars": len(text)})
    result = await invoke_with_retry(
      operation_name="extraction",
      func=lambda: self._extraction_client.invoke(payload, self._timeouts.extraction),
      policy=self._retry_policy,
      timeout_seconds=self._timeouts.extraction,
      observer=observer,
      sleep=self._sleep,
    )
    if not isinstance(result, Success):
      await self._fail(state, f"Text extraction failed: {result.reason}")
      return None

    text = str(result.value)
    await self._documents_repo.set_extracted_text(state.document_ref, text)
    await state.tracker.advance(percent=PROGRESS_EXTRACTED, current_step=STEP_QUICK_FACTS)
    state.publish(StatusEvent(message=STEP_QUICK_FACTS, progress=state.tracker.percent, step=2, total_steps=TOTAL_PIPELINE_STEPS))
    return text

  async def _quick_facts(self, state: _RunState, text: str) -> QuickFacts | None:
    state.stage = "quick_facts"
    observer = state.step_logger.observer("quick_facts", input={"chars": len(text)}, summarize=lambda facts: facts.model_dump(mode="json"))
    result = await invoke_with_retry(
      operation_name="quick_facts",
      func=lambda: self._quick_facts_client.invoke(text, self._timeouts.quick_facts),
      policy=self._retry_policy,
      timeout_seconds=self._timeouts.quick_facts,
      observer=observer,
      sleep=self._sleep,
    )
    if not isinstance(result, Success):
      # Quick facts are optional; the memo is written without them.
      logger.warning("Quick facts unavailable job_id=%s reason=%s", state.job_id, result.reason)
      return None

    facts: QuickFacts = result.value
    data = facts.model_dump(mode="json")
    await state.tracker.advance(percent=PROGRESS_CONTEXT_READY, current_step=STEP_SYNTHESIZING, status="context_ready", quick_facts=data)
    state.publish(QuickFactsEvent(data=data, progress=state.tracker.percent))
    return facts

  async def _synthesize(self, state: _RunState, text: str, facts: QuickFacts | None) -> None:
    state.stage = "synthesis"
    if facts is None:
      await state.tracker.advance(percent=PROGRESS_CONTEXT_READY, current_step=STEP_SYNTHESIZING)
    state.publish(StatusEvent(message=STEP_SYNTHESIZING, progress=state.tracker.percent, step=3, total_steps=TOTAL_PIPELINE_STEPS))

    request = SynthesisRequest(deck_text=text, quick_facts=facts, notes=state.notes)
    observer = state.step_logger.observer("synthesis", input={"chars": len(text), "has_quick_facts": facts is not None, "has_notes": bool(state.notes)}, close_on_success=False)
    result = await invoke_with_retry(
      operation_name="synthesis",
      func=lambda: self._synthesis_client.invoke(request, self._timeouts.synthesis_open),
      policy=self._retry_policy,
      timeout_seconds=self._timeouts.synthesis_open,
      observer=observer,
      sleep=self._sleep,
    )
    if not isinstance(result, Success):
      await self._fail(state, f"Memo synthesis failed: {result.reason}")
      return

    estimator = SynthesisProgressEstimator(expected_chars=self._expected_memo_chars, interval_seconds=self._progress_interval_seconds, cap=PROGRESS_FINALIZING - 1)
    parts: list[str] = []
    failure: str | None = None
    try:
      parts, failure = await self._consume(state, result.value, estimator)
    except asyncio.CancelledError:
      await observer.close_open(status="error", error_message="Memo synthesis was cancelled")
      raise
    except Exception as exc:
      await observer.close_open(status="error", error_message=f"{type(exc).__name__}: {exc}")
      raise

    full_text = "".join(parts)
    if failure is None and not full_text.strip():
      failure = "Memo synthesis returned no text"

    if failure is not None:
      await observer.close_open(status="error", output={"chars": len(full_text), "chunks": len(parts)}, error_message=failure)
      await self._fail(state, failure)
      return

    await observer.close_open(status="success", output={"chars": len(full_text), "chunks": len(parts)})
    memo_data = await self._finalize(state, full_text)
    metadata = {
      "chars": len(full_text),
      "chunks": len(parts),
      "quick_facts_available": facts is not None,
      "extracted_data": memo_data.model_dump(mode="json") if memo_data is not None else None,
      "completed_at": now_iso(),
    }
    await state.tracker.complete(result={"full_text": full_text, "metadata": metadata})
    state.publish(StatusEvent(message=STEP_COMPLETED, progress=PROGRESS_COMPLETE, step=TOTAL_PIPELINE_STEPS, total_steps=TOTAL_PIPELINE_STEPS))
    state.publish(DoneEvent(job_id=state.job_id))
    logger.info("Run completed job_id=%s chars=%d chunks=%d", state.job_id, len(full_text), len(parts))

  async def _finalize(self, state: _RunState, memo_text: str) -> MemoData | None:
    """Pull structured deal fields from the finished memo; a failure leaves them unset."""
    state.stage = "finalization"
    await state.tracker.advance(percent=PROGRESS_FINALIZING, current_step=STEP_FINALIZING)
    state.publish(StatusEvent(message=STEP_FINALIZING, progress=state.tracker.percent, step=TOTAL_PIPELINE_STEPS, total_steps=TOTAL_PIPELINE_STEPS))

    observer = state.step_logger.observer("finalization", input={"chars": len(memo_text)}, summarize=lambda data: data.model_dump(mode="json"))
    result = await invoke_with_retry(
      operation_name="finalization",
      func=lambda: self._memo_data_client.invoke(memo_text, self._timeouts.memo_data),
      policy=self._retry_policy,
      timeout_seconds=self._timeouts.memo_data,
      observer=observer,
      sleep=self._sleep,
    )
    if not isinstance(result, Success):
      logger.warning("Memo data unavailable job_id=%s reason=%s", state.job_id, result.reason)
      return None
    return result.value

  async def _consume(self, state: _RunState, chunks: AsyncIterator[str], estimator: SynthesisProgressEstimator) -> tuple[list[str], str | None]:
    """Relay and collect chunks; returns the parts and a failure message when the stream broke."""
    parts: list[str] = []
    try:
      async with asyncio.timeout(self._timeouts.synthesis_stream):
        async for chunk in chunks:
          if not chunk:
            continue
          parts.append(chunk)
          state.publish(TextEvent(text=chunk))
          percent = estimator.observe(chunk)
          if percent is not None:
            await state.tracker.advance(percent=percent, current_step=STEP_SYNTHESIZING)
    except TimeoutError:
      return parts, f"Memo synthesis timed out after {self._timeouts.synthesis_stream:.0f}s"
    except (ExternalServiceError, ProtocolError) as exc:
      return parts, f"Memo synthesis stream failed: {exc.message}"
    finally:
      aclose = getattr(chunks, "aclose", None)
      if aclose is not None:
        await aclose()
    return parts, None

  async def _fail(self, state: _RunState, message: str) -> None:
    logger.error("Analysis failed job_id=%s stage=%s error=%s", state.job_id, state.stage, message)
    record = await state.tracker.fail(message=message)
    state.publish(ErrorEvent(error=message))
    if record is None or self._alert_sender is None:
      return
    await self._alert_sender.send(FailureAlert(job_id=state.job_id, job_key=state.job_key, error_message=message, step=state.stage, occurred_at=record.completed_at or now_iso()))
