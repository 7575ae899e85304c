"""Per-attempt workflow step logging."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from deckmemo.ai.results import AdapterResult, FatalError, RetriableError
from deckmemo.jobs.models import StepLogRecord, StepName, StepStatus
from deckmemo.storage.jobs_repo import JobsRepository
from deckmemo.utils.ids import generate_log_id, now_iso

logger = logging.getLogger(__name__)


class WorkflowStepLogger:
  """Open and close step log rows for one job."""

  def __init__(self, *, jobs_repo: JobsRepository, job_id: str, job_key: str, clock: Callable[[], float] = time.monotonic) -> None:
    self._jobs_repo = jobs_repo
    self._job_id = job_id
    self._job_key = job_key
    self._clock = clock
    self._started: dict[str, float] = {}

  async def start(self, step_name: StepName, *, attempt: int, input: dict[str, Any] | None = None) -> StepLogRecord:
    record = StepLogRecord(id=generate_log_id(), job_id=self._job_id, job_key=self._job_key, step_name=step_name, attempt=attempt, status="running", started_at=now_iso(), input=input)
    self._started[record.id] = self._clock()
    await self._jobs_repo.append_step_log(record)
    logger.info("Step started job_id=%s step=%s attempt=%d", self._job_id, step_name, attempt)
    return record

  async def finish(self, record: StepLogRecord, *, status: StepStatus, output: dict[str, Any] | None = None, error_message: str | None = None) -> StepLogRecord | None:
    started = self._started.pop(record.id, self._clock())
    duration_ms = int((self._clock() - started) * 1000)
    closed = await self._jobs_repo.close_step_log(record.id, status=status, completed_at=now_iso(), duration_ms=duration_ms, output=output, error_message=error_message)
    logger.info("Step finished job_id=%s step=%s attempt=%d status=%s duration_ms=%d", self._job_id, record.step_name, record.attempt, status, duration_ms)
    return closed

  def observer(self, step_name: StepName, *, input: dict[str, Any] | None = None, summarize: Callable[[Any], dict[str, Any] | None] | None = None, close_on_success: bool = True) -> StepAttemptObserver:
    return StepAttemptObserver(self, step_name, input=input, summarize=summarize, close_on_success=close_on_success)


class StepAttemptObserver:
  """Retry observer that writes one step log row per attempt."""

  def __init__(self, step_logger: WorkflowStepLogger, step_name: StepName, *, input: dict[str, Any] | None, summarize: Callable[[Any], dict[str, Any] | None] | None, close_on_success: bool) -> None:
    self._step_logger = step_logger
    self._step_name = step_name
    self._input = input
    self._summarize = summarize
    self._close_on_success = close_on_success
    self._current: StepLogRecord | None = None

  async def attempt_started(self, attempt: int) -> None:
    self._current = await self._step_logger.start(self._step_name, attempt=attempt, input=self._input)

  async def attempt_finished(self, attempt: int, result: AdapterResult) -> None:
    record = self._current
    if record is None:
      return
    if isinstance(result, RetriableError | FatalError):
      await self._step_logger.finish(record, status="error", error_message=result.reason)
      self._current = None
      return
    if not self._close_on_success:
      return
    output = self._summarize(result.value) if self._summarize is not None else None
    await self._step_logger.finish(record, status="success", output=output)
    self._current = None

  async def close_open(self, *, status: StepStatus, output: dict[str, Any] | None = None, error_message: str | None = None) -> None:
    """Close the row kept open after a successful attempt."""
    record = self._current
    if record is None:
      return
    self._current = None
    await self._step_logger.finish(record, status=status, output=output, error_message=error_message)
