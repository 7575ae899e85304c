"""Domain models for deck analysis jobs and their workflow step logs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

JobStatus = Literal["pending", "processing", "context_ready", "completed", "failed"]
StepName = Literal["extraction", "quick_facts", "synthesis", "finalization"]
StepStatus = Literal["pending", "running", "success", "error"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})
ACTIVE_STATUSES: tuple[str, ...] = ("pending", "processing", "context_ready")

# Allowed status changes; a write that keeps the current status is always allowed while non-terminal.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
  "pending": frozenset({"processing"}),
  "processing": frozenset({"context_ready", "completed", "failed"}),
  "context_ready": frozenset({"completed", "failed"}),
  "completed": frozenset(),
  "failed": frozenset(),
}


def is_terminal(status: str) -> bool:
  """Return True when no further writes may touch a job in this status."""
  return status in TERMINAL_STATUSES


def can_transition(current: str, target: str) -> bool:
  """Return True when a job may move from ``current`` to ``target``."""
  if is_terminal(current):
    return False
  if current == target:
    return True
  return target in ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass
class JobRecord:
  """One analysis run for a deal's deck."""

  job_id: str
  job_key: str
  document_ref: str
  user_id: str
  status: JobStatus
  created_at: str
  updated_at: str
  progress_percent: int = 0
  current_step: str | None = None
  quick_facts: dict[str, Any] | None = None
  result: dict[str, Any] | None = None
  error_message: str | None = None
  started_at: str | None = None
  completed_at: str | None = None

  @property
  def is_terminal(self) -> bool:
    return is_terminal(self.status)


@dataclass
class StepLogRecord:
  """Append-only record of one stage attempt."""

  id: str
  job_id: str
  job_key: str
  step_name: StepName
  attempt: int
  status: StepStatus
  started_at: str
  input: dict[str, Any] | None = None
  output: dict[str, Any] | None = None
  error_message: str | None = None
  completed_at: str | None = None
  duration_ms: int | None = None
