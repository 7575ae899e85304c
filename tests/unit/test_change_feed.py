from __future__ import annotations

import asyncio

import pytest

from deckmemo.jobs.models import JobRecord
from deckmemo.storage.change_feed import ChangeFeed, PublishingJobsRepository
from deckmemo.storage.memory_repo import InMemoryJobsRepository


def _job(job_id: str, job_key: str = "deal-1") -> JobRecord:
  return JobRecord(job_id=job_id, job_key=job_key, document_ref="doc-1", user_id="user-1", status="pending", created_at="2026-01-01T00:00:00.000Z", updated_at="2026-01-01T00:00:00.000Z")


@pytest.mark.anyio
async def test_applied_writes_are_published_to_key_subscribers() -> None:
  feed = ChangeFeed()
  repo = PublishingJobsRepository(InMemoryJobsRepository(), feed)
  subscription = feed.subscribe("deal-1")
  other = feed.subscribe("deal-2")

  await repo.create_job(_job("job-1"))
  await repo.claim_job("job-1", current_step="Extracting deck text", progress_percent=10, started_at="2026-01-01T00:00:01.000Z")
  await repo.update_job("job-1", status="failed", error_message="boom", completed_at="2026-01-01T00:00:02.000Z")

  statuses = [(await subscription.get()).status for _ in range(3)]
  assert statuses == ["pending", "processing", "failed"]
  with pytest.raises(TimeoutError):
    await asyncio.wait_for(other.get(), timeout=0.01)


@pytest.mark.anyio
async def test_rejected_writes_are_not_published() -> None:
  feed = ChangeFeed()
  repo = PublishingJobsRepository(InMemoryJobsRepository(), feed)
  await repo.create_job(_job("job-1"))
  await repo.claim_job("job-1", current_step="Extracting deck text", progress_percent=10, started_at="2026-01-01T00:00:01.000Z")
  await repo.update_job("job-1", status="completed", result={"full_text": "memo"}, completed_at="2026-01-01T00:00:02.000Z")
  subscription = feed.subscribe("deal-1")

  assert await repo.update_job("job-1", status="failed", error_message="late") is None
  assert await repo.claim_job("job-1", current_step="again", progress_percent=10, started_at="2026-01-01T00:00:03.000Z") is None

  with pytest.raises(TimeoutError):
    await asyncio.wait_for(subscription.get(), timeout=0.01)


@pytest.mark.anyio
async def test_closing_a_subscription_removes_it() -> None:
  feed = ChangeFeed()

  async with feed.subscribe("deal-1"):
    assert feed.subscriber_count("deal-1") == 1

  assert feed.subscriber_count("deal-1") == 0


@pytest.mark.anyio
async def test_subscribers_receive_snapshots_not_shared_objects() -> None:
  feed = ChangeFeed()
  subscription = feed.subscribe("deal-1")
  record = _job("job-1")

  feed.publish(record)
  record.status = "failed"

  delivered = await subscription.get()
  assert delivered.status == "pending"
