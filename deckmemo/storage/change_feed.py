"""In-process change notifications for analysis jobs.

Every successful job insert or update is published to subscribers of that job key as a
full record snapshot. ``PublishingJobsRepository`` wraps any ``JobsRepository`` so the
orchestrator and the submit path publish without knowing about subscribers.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator
from dataclasses import replace
from typing import Any

from deckmemo.jobs.models import JobRecord, JobStatus, StepLogRecord, StepStatus
from deckmemo.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)


class FeedSubscription:
  """Queue of job snapshots for one subscriber."""

  def __init__(self, feed: ChangeFeed, job_key: str) -> None:
    self._feed = feed
    self.job_key = job_key
    self._queue: asyncio.Queue[JobRecord] = asyncio.Queue()
    self._closed = False

  def deliver(self, record: JobRecord) -> None:
    if not self._closed:
      self._queue.put_nowait(replace(record))

  async def get(self) -> JobRecord:
    return await self._queue.get()

  def close(self) -> None:
    self._closed = True
    self._feed.unsubscribe(self)

  async def __aiter__(self) -> AsyncIterator[JobRecord]:
    while True:
      yield await self.get()

  async def __aenter__(self) -> FeedSubscription:
    return self

  async def __aexit__(self, *exc_info: object) -> None:
    self.close()


class ChangeFeed:
  """Fan job snapshots out to subscribers keyed by job key."""

  def __init__(self) -> None:
    self._subscribers: dict[str, set[FeedSubscription]] = defaultdict(set)

  def subscribe(self, job_key: str) -> FeedSubscription:
    subscription = FeedSubscription(self, job_key)
    self._subscribers[job_key].add(subscription)
    return subscription

  def unsubscribe(self, subscription: FeedSubscription) -> None:
    subscribers = self._subscribers.get(subscription.job_key)
    if not subscribers:
      return
    subscribers.discard(subscription)
    if not subscribers:
      del self._subscribers[subscription.job_key]

  def publish(self, record: JobRecord) -> None:
    for subscription in list(self._subscribers.get(record.job_key, ())):
      subscription.deliver(record)

  def subscriber_count(self, job_key: str) -> int:
    return len(self._subscribers.get(job_key, ()))


class PublishingJobsRepository:
  """Jobs repository decorator that publishes every applied job write to a change feed."""

  def __init__(self, inner: JobsRepository, feed: ChangeFeed) -> None:
    self._inner = inner
    self._feed = feed

  @property
  def feed(self) -> ChangeFeed:
    return self._feed

  async def create_job(self, record: JobRecord) -> None:
    await self._inner.create_job(record)
    self._feed.publish(record)

  async def get_job(self, job_id: str) -> JobRecord | None:
    return await self._inner.get_job(job_id)

  async def get_latest_for_key(self, job_key: str) -> JobRecord | None:
    return await self._inner.get_latest_for_key(job_key)

  async def find_active_for_key(self, job_key: str) -> JobRecord | None:
    return await self._inner.find_active_for_key(job_key)

  async def claim_job(self, job_id: str, *, current_step: str, progress_percent: int, started_at: str) -> JobRecord | None:
    record = await self._inner.claim_job(job_id, current_step=current_step, progress_percent=progress_percent, started_at=started_at)
    if record is not None:
      self._feed.publish(record)
    return record

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
    record = await self._inner.update_job(job_id, status=status, progress_percent=progress_percent, current_step=current_step, quick_facts=quick_facts, result=result, error_message=error_message, completed_at=completed_at)
    if record is not None:
      self._feed.publish(record)
    return record

  async def fail_active_jobs(self, *, error_message: str, current_step: str, completed_at: str) -> list[JobRecord]:
    records = await self._inner.fail_active_jobs(error_message=error_message, current_step=current_step, completed_at=completed_at)
    for record in records:
      self._feed.publish(record)
    return records

  async def append_step_log(self, record: StepLogRecord) -> None:
    await self._inner.append_step_log(record)

  async def close_step_log(self, log_id: str, *, status: StepStatus, completed_at: str, duration_ms: int, output: dict[str, Any] | None = None, error_message: str | None = None) -> StepLogRecord | None:
    return await self._inner.close_step_log(log_id, status=status, completed_at=completed_at, duration_ms=duration_ms, output=output, error_message=error_message)

  async def list_step_logs(self, job_id: str) -> list[StepLogRecord]:
    return await self._inner.list_step_logs(job_id)
