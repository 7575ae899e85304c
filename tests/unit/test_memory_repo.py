from __future__ import annotations

import pytest

from deckmemo.core.exceptions import JobConflictError
from deckmemo.jobs.models import JobRecord, StepLogRecord, can_transition
from deckmemo.storage.memory_repo import InMemoryJobsRepository


def _job(job_id: str, job_key: str = "deal-1", created_at: str = "2026-01-01T00:00:00.000Z") -> JobRecord:
  return JobRecord(job_id=job_id, job_key=job_key, document_ref="doc-1", user_id="user-1", status="pending", created_at=created_at, updated_at=created_at)


def test_state_machine_transitions() -> None:
  assert can_transition("pending", "processing")
  assert can_transition("processing", "context_ready")
  assert can_transition("processing", "completed")
  assert can_transition("context_ready", "failed")
  assert can_transition("context_ready", "context_ready")
  assert not can_transition("pending", "completed")
  assert not can_transition("context_ready", "processing")
  assert not can_transition("completed", "completed")
  assert not can_transition("failed", "processing")


@pytest.mark.anyio
async def test_only_one_active_job_per_key() -> None:
  repo = InMemoryJobsRepository()
  await repo.create_job(_job("job-1"))

  with pytest.raises(JobConflictError):
    await repo.create_job(_job("job-2"))

  await repo.create_job(_job("job-3", job_key="deal-2"))


@pytest.mark.anyio
async def test_resubmission_after_terminal_creates_a_new_latest_job() -> None:
  repo = InMemoryJobsRepository()
  await repo.create_job(_job("job-1"))
  await repo.claim_job("job-1", current_step="Extracting deck text", progress_percent=10, started_at="2026-01-01T00:00:01.000Z")
  await repo.update_job("job-1", status="failed", error_message="boom", completed_at="2026-01-01T00:00:02.000Z")

  await repo.create_job(_job("job-2", created_at="2026-01-01T00:01:00.000Z"))

  latest = await repo.get_latest_for_key("deal-1")
  assert latest is not None
  assert latest.job_id == "job-2"
  first = await repo.get_job("job-1")
  assert first is not None
  assert first.status == "failed"
  assert first.error_message == "boom"


@pytest.mark.anyio
async def test_claim_is_atomic_pending_to_processing() -> None:
  repo = InMemoryJobsRepository()
  await repo.create_job(_job("job-1"))

  claimed = await repo.claim_job("job-1", current_step="Extracting deck text", progress_percent=10, started_at="2026-01-01T00:00:01.000Z")

  assert claimed is not None
  assert claimed.status == "processing"
  assert claimed.started_at == "2026-01-01T00:00:01.000Z"
  assert await repo.claim_job("job-1", current_step="again", progress_percent=10, started_at="2026-01-01T00:00:05.000Z") is None
  assert await repo.claim_job("missing", current_step="x", progress_percent=10, started_at="2026-01-01T00:00:05.000Z") is None


@pytest.mark.anyio
async def test_guarded_update_keeps_max_progress_and_set_once_fields() -> None:
  repo = InMemoryJobsRepository()
  await repo.create_job(_job("job-1"))
  await repo.claim_job("job-1", current_step="Extracting deck text", progress_percent=10, started_at="2026-01-01T00:00:01.000Z")

  await repo.update_job("job-1", progress_percent=60)
  record = await repo.update_job("job-1", progress_percent=30, current_step="later")
  assert record is not None
  assert record.progress_percent == 60
  assert record.current_step == "later"

  # Moving back to pending is rejected.
  assert await repo.update_job("job-1", status="pending") is None

  done = await repo.update_job("job-1", status="completed", progress_percent=100, result={"full_text": "a"}, completed_at="2026-01-01T00:00:09.000Z")
  assert done is not None
  assert await repo.update_job("job-1", result={"full_text": "b"}) is None
  stored = await repo.get_job("job-1")
  assert stored is not None
  assert stored.result == {"full_text": "a"}


@pytest.mark.anyio
async def test_returned_records_are_copies() -> None:
  repo = InMemoryJobsRepository()
  await repo.create_job(_job("job-1"))

  record = await repo.get_job("job-1")
  assert record is not None
  record.status = "failed"

  stored = await repo.get_job("job-1")
  assert stored is not None
  assert stored.status == "pending"


@pytest.mark.anyio
async def test_step_logs_close_once() -> None:
  repo = InMemoryJobsRepository()
  log = StepLogRecord(id="log-1", job_id="job-1", job_key="deal-1", step_name="extraction", attempt=1, status="running", started_at="2026-01-01T00:00:01.000Z", input={"size_bytes": 10})
  await repo.append_step_log(log)

  closed = await repo.close_step_log("log-1", status="success", completed_at="2026-01-01T00:00:02.000Z", duration_ms=1000, output={"chars": 5})
  assert closed is not None
  assert closed.status == "success"
  assert await repo.close_step_log("log-1", status="error", completed_at="2026-01-01T00:00:03.000Z", duration_ms=2000, error_message="late") is None

  logs = await repo.list_step_logs("job-1")
  assert len(logs) == 1
  assert logs[0].status == "success"
  assert logs[0].error_message is None
  assert logs[0].input == {"size_bytes": 10}


@pytest.mark.anyio
async def test_fail_active_jobs_releases_keys_left_by_a_restart() -> None:
  repo = InMemoryJobsRepository()
  await repo.create_job(_job("job-1"))
  await repo.claim_job("job-1", current_step="Extracting deck text", progress_percent=10, started_at="2026-01-01T00:00:01.000Z")
  await repo.create_job(_job("job-2", job_key="deal-2"))
  await repo.create_job(_job("job-3", job_key="deal-3"))
  await repo.claim_job("job-3", current_step="Extracting deck text", progress_percent=10, started_at="2026-01-01T00:00:01.000Z")
  await repo.update_job("job-3", status="failed", error_message="Text extraction failed", completed_at="2026-01-01T00:00:02.000Z")
  await repo.append_step_log(StepLogRecord(id="log-1", job_id="job-1", job_key="deal-1", step_name="extraction", attempt=1, status="running", started_at="2026-01-01T00:00:01.000Z"))

  failed = await repo.fail_active_jobs(error_message="Analysis was interrupted by a restart", current_step="Analysis failed", completed_at="2026-01-01T01:00:00.000Z")

  assert sorted(record.job_id for record in failed) == ["job-1", "job-2"]
  for job_id in ("job-1", "job-2"):
    record = await repo.get_job(job_id)
    assert record is not None
    assert record.status == "failed"
    assert record.error_message == "Analysis was interrupted by a restart"
    assert record.completed_at == "2026-01-01T01:00:00.000Z"
  untouched = await repo.get_job("job-3")
  assert untouched is not None
  assert untouched.error_message == "Text extraction failed"
  assert untouched.completed_at == "2026-01-01T00:00:02.000Z"

  logs = await repo.list_step_logs("job-1")
  assert [(log.status, log.completed_at, log.error_message) for log in logs] == [("error", "2026-01-01T01:00:00.000Z", "Analysis was interrupted by a restart")]

  assert await repo.fail_active_jobs(error_message="x", current_step="Analysis failed", completed_at="2026-01-01T02:00:00.000Z") == []
  # The key accepts new work again.
  await repo.create_job(_job("job-4"))
