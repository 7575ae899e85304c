"""Job progress milestones and tracking utilities."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from deckmemo.jobs.models import JobRecord, JobStatus
from deckmemo.storage.jobs_repo import JobsRepository
from deckmemo.utils.ids import now_iso

logger = logging.getLogger(__name__)

PROGRESS_CLAIMED = 10
PROGRESS_EXTRACTED = 30
PROGRESS_CONTEXT_READY = 40
PROGRESS_FINALIZING = 95
PROGRESS_SYNTHESIS_CAP = 99
PROGRESS_COMPLETE = 100

TOTAL_PIPELINE_STEPS = 3

STEP_EXTRACTING = "Extracting deck text"
STEP_QUICK_FACTS = "Extracting headline facts"
STEP_SYNTHESIZING = "Writing investment memo"
STEP_FINALIZING = "Finalising analysis"
STEP_COMPLETED = "Analysis complete"
STEP_FAILED = "Analysis failed"


class JobSupersededError(Exception):
  """Raised when a guarded write is rejected because the job already reached a terminal state."""


class SynthesisProgressEstimator:
  """Map streamed characters onto the synthesis progress band.

  Progress moves from ``start`` toward ``cap`` as characters arrive, relative to an
  expected memo length. A new value is offered at most once per ``interval_seconds``
  and only when the integer percent changes.
  """

  def __init__(self, *, expected_chars: int, interval_seconds: float, start: int = PROGRESS_CONTEXT_READY, cap: int = PROGRESS_SYNTHESIS_CAP, clock: Callable[[], float] = time.monotonic) -> None:
    self._expected_chars = max(expected_chars, 1)
    self._interval_seconds = interval_seconds
    self._start = start
    self._cap = cap
    self._clock = clock
    self._chars = 0
    self._last_percent = start
    self._last_emit = clock()

  @property
  def chars(self) -> int:
    return self._chars

  def estimate(self) -> int:
    """Return the current estimate without consuming the update interval."""
    span = self._cap - self._start
    fraction = min(self._chars / self._expected_chars, 1.0)
    return min(self._start + int(span * fraction), self._cap)

  def observe(self, chunk: str) -> int | None:
    """Record a chunk; return a percent to persist, or None when no write is due."""
    self._chars += len(chunk)
    now = self._clock()
    if now - self._last_emit < self._interval_seconds:
      return None
    percent = self.estimate()
    if percent <= self._last_percent:
      return None
    self._last_percent = percent
    self._last_emit = now
    return percent


class JobProgressTracker:
  """Write job progress through the guarded repository for a single run."""

  def __init__(self, *, job_id: str, jobs_repo: JobsRepository) -> None:
    self._job_id = job_id
    self._jobs_repo = jobs_repo
    self._percent = 0
    self._status: JobStatus = "pending"

  @property
  def percent(self) -> int:
    return self._percent

  @property
  def status(self) -> JobStatus:
    return self._status

  def _accept(self, record: JobRecord | None) -> JobRecord:
    if record is None:
      raise JobSupersededError(f"Job {self._job_id} rejected a write; it is already terminal.")
    self._percent = record.progress_percent
    self._status = record.status
    return record

  async def claim(self, *, current_step: str = STEP_EXTRACTING) -> JobRecord | None:
    """Move the job from pending to processing; returns None when the job was not pending."""
    record = await self._jobs_repo.claim_job(self._job_id, current_step=current_step, progress_percent=PROGRESS_CLAIMED, started_at=now_iso())
    if record is None:
      return None
    return self._accept(record)

  async def advance(self, *, percent: int, current_step: str, status: JobStatus | None = None, quick_facts: dict[str, Any] | None = None) -> JobRecord:
    """Persist a progress milestone; lower values than the last write are raised to it."""
    percent = max(min(percent, PROGRESS_SYNTHESIS_CAP), self._percent)
    record = await self._jobs_repo.update_job(self._job_id, status=status, progress_percent=percent, current_step=current_step, quick_facts=quick_facts)
    return self._accept(record)

  async def complete(self, *, result: dict[str, Any]) -> JobRecord:
    """Store the result and mark the job completed."""
    record = await self._jobs_repo.update_job(self._job_id, status="completed", progress_percent=PROGRESS_COMPLETE, current_step=STEP_COMPLETED, result=result, completed_at=now_iso())
    return self._accept(record)

  async def fail(self, *, message: str) -> JobRecord | None:
    """Set the job to failed; returns None when the job was already terminal."""
    record = await self._jobs_repo.update_job(self._job_id, status="failed", current_step=STEP_FAILED, error_message=message or "Analysis failed", completed_at=now_iso())
    if record is None:
      logger.warning("Skipped failure write for job_id=%s; job is already terminal", self._job_id)
      return None
    self._status = record.status
    return record
