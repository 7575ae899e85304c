from __future__ import annotations

from collections.abc import Callable

import pytest

from deckmemo.ai.orchestrator import RunContext
from deckmemo.core.exceptions import AuthorizationError, JobConflictError, NotFoundError, ValidationError
from deckmemo.services.analyses import INTERRUPTED_MESSAGE
from deckmemo.streaming.parser import FrameDecoder
from deckmemo.streaming.relay import ErrorEvent, RelayEvent, StatusEvent, Subscription, TextEvent, relay_events
from tests.fakes import PDF_BYTES, Pipeline, PipelineFactory, ScriptedClient, StreamingSynthesisClient, stall_forever


@pytest.mark.anyio
async def test_upload_stores_the_deck_and_metadata(make_pipeline: PipelineFactory) -> None:
  pipeline = make_pipeline()

  document = await pipeline.add_document(user_id="user-1", job_key="deal-1")

  assert document.size_bytes == len(PDF_BYTES)
  assert document.storage_path.startswith("user-1/")
  assert await pipeline.store.get(document.storage_path) == PDF_BYTES
  stored = await pipeline.documents_repo.get_document(document.document_id)
  assert stored is not None
  assert stored.job_key == "deal-1"


@pytest.mark.anyio
@pytest.mark.parametrize("data", [b"", b"GIF89a not a pdf", b"%PDF-" + b"0" * 2048])
async def test_upload_rejects_empty_non_pdf_and_oversized_bodies(make_pipeline: PipelineFactory, data: bytes) -> None:
  pipeline = make_pipeline(max_document_bytes=1024)

  with pytest.raises(ValidationError):
    await pipeline.service.upload_document(user_id="user-1", job_key="deal-1", file_name="deck.pdf", content_type="application/pdf", data=data)


@pytest.mark.anyio
async def test_submit_rejects_unknown_foreign_and_mismatched_documents(make_pipeline: PipelineFactory) -> None:
  pipeline = make_pipeline()
  document = await pipeline.add_document(user_id="user-1", job_key="deal-1")

  with pytest.raises(NotFoundError):
    await pipeline.service.submit(user_id="user-1", document_ref="missing", job_key="deal-1")
  with pytest.raises(AuthorizationError):
    await pipeline.service.submit(user_id="user-2", document_ref=document.document_id, job_key="deal-1")
  with pytest.raises(ValidationError):
    await pipeline.service.submit(user_id="user-1", document_ref=document.document_id, job_key="deal-2")

  assert await pipeline.jobs_repo.get_latest_for_key("deal-1") is None
  assert pipeline.runner.active_count == 0


@pytest.mark.anyio
async def test_submit_conflicts_with_an_active_job_for_the_key(make_pipeline: PipelineFactory) -> None:
  pipeline = make_pipeline()
  document = await pipeline.add_document()
  active = await pipeline.add_pending_job(document)

  with pytest.raises(JobConflictError):
    await pipeline.service.submit(user_id="user-1", document_ref=document.document_id, job_key="deal-1")

  latest = await pipeline.jobs_repo.get_latest_for_key("deal-1")
  assert latest is not None
  assert latest.job_id == active.job_id


@pytest.mark.anyio
async def test_disconnect_after_first_chunk_does_not_stop_the_run(make_pipeline: PipelineFactory) -> None:
  pipeline = make_pipeline(synthesis=StreamingSynthesisClient(["Hello, ", "world", "!", " More text."]))
  document = await pipeline.add_document()

  submitted = await pipeline.service.submit(user_id="user-1", document_ref=document.document_id, job_key="deal-1")
  frames = relay_events(submitted.subscription, keepalive_seconds=5)
  decoder = FrameDecoder()
  received: list[TextEvent] = []
  async for frame in frames:
    received.extend(event for event in decoder.feed(frame) if isinstance(event, TextEvent))
    if received:
      break
  # The client goes away after the first chunk.
  await frames.aclose()

  assert submitted.subscription.closed
  await pipeline.runner.wait(submitted.job.job_id)

  record = await pipeline.jobs_repo.get_job(submitted.job.job_id)
  assert record is not None
  assert record.status == "completed"
  assert record.result is not None
  assert record.result["full_text"] == "Hello, world! More text."
  assert received[0].text == "Hello, "
  assert pipeline.runner.active_count == 0


@pytest.mark.anyio
async def test_resubmission_after_completion_creates_a_new_job(make_pipeline: PipelineFactory) -> None:
  pipeline = make_pipeline()
  document = await pipeline.add_document()
  first = await pipeline.service.submit(user_id="user-1", document_ref=document.document_id, job_key="deal-1")
  await pipeline.runner.wait(first.job.job_id)

  second = await pipeline.service.submit(user_id="user-1", document_ref=document.document_id, job_key="deal-1", notes="Focus on the team")
  await pipeline.runner.wait(second.job.job_id)

  assert second.job.job_id != first.job.job_id
  latest = await pipeline.service.get_latest(user_id="user-1", job_key="deal-1")
  assert latest.job_id == second.job.job_id
  assert latest.status == "completed"
  original = await pipeline.jobs_repo.get_job(first.job.job_id)
  assert original is not None
  assert original.status == "completed"
  assert isinstance(pipeline.synthesis, StreamingSynthesisClient)
  assert pipeline.synthesis.requests[-1].notes == "Focus on the team"


@pytest.mark.anyio
async def test_get_latest_checks_ownership(make_pipeline: PipelineFactory) -> None:
  pipeline = make_pipeline()
  document = await pipeline.add_document()
  await pipeline.add_pending_job(document)

  with pytest.raises(AuthorizationError):
    await pipeline.service.get_latest(user_id="user-2", job_key="deal-1")
  with pytest.raises(NotFoundError):
    await pipeline.service.get_latest(user_id="user-1", job_key="deal-9")


@pytest.mark.anyio
async def test_watch_yields_current_record_then_changes_until_terminal(make_pipeline: PipelineFactory) -> None:
  pipeline = make_pipeline()
  document = await pipeline.add_document()
  job = await pipeline.add_pending_job(document)

  records = await pipeline.service.watch(user_id="user-1", job_key="deal-1")
  first = await records.__anext__()
  assert first.job_id == job.job_id
  assert first.status == "pending"

  pipeline.runner.start(job.job_id, pipeline.orchestrator.run(job.document_ref, job.job_key, RunContext(job_id=job.job_id, user_id=job.user_id)))
  rest = [record async for record in records]

  assert rest[-1].status == "completed"
  progress = [record.progress_percent for record in rest]
  assert progress == sorted(progress)
  assert pipeline.feed.subscriber_count("deal-1") == 0


@pytest.mark.anyio
async def test_watch_of_a_finished_job_yields_one_record(make_pipeline: PipelineFactory) -> None:
  pipeline = make_pipeline()
  document = await pipeline.add_document()
  submitted = await pipeline.service.submit(user_id="user-1", document_ref=document.document_id, job_key="deal-1")
  await pipeline.runner.wait(submitted.job.job_id)

  records = [record async for record in await pipeline.service.watch(user_id="user-1", job_key="deal-1")]

  assert [record.status for record in records] == ["completed"]


@pytest.mark.anyio
async def test_watch_rejects_other_users_without_leaking_subscriptions(make_pipeline: PipelineFactory) -> None:
  pipeline = make_pipeline()
  document = await pipeline.add_document()
  await pipeline.add_pending_job(document)

  with pytest.raises(AuthorizationError):
    await pipeline.service.watch(user_id="user-2", job_key="deal-1")

  assert pipeline.feed.subscriber_count("deal-1") == 0


async def _read_until(subscription: Subscription, reached: Callable[[RelayEvent], bool]) -> None:
  while True:
    event = await subscription.get()
    assert event is not None, "run ended before the expected event"
    if reached(event):
      return


def _stalled_synthesis(make_pipeline: PipelineFactory) -> Pipeline:
  return make_pipeline(synthesis=StreamingSynthesisClient(["Hello, "], stall=True))


def _stalled_quick_facts(make_pipeline: PipelineFactory) -> Pipeline:
  return make_pipeline(quick_facts=ScriptedClient(stall_forever))


@pytest.mark.anyio
@pytest.mark.parametrize(
  ("build", "reached", "stage"),
  [
    (_stalled_synthesis, lambda event: isinstance(event, TextEvent), "synthesis"),
    (_stalled_quick_facts, lambda event: isinstance(event, StatusEvent) and event.step == 2, "quick_facts"),
  ],
)
async def test_shutdown_drain_fails_the_run_and_closes_its_step_logs(make_pipeline: PipelineFactory, build: Callable[[PipelineFactory], Pipeline], reached: Callable[[RelayEvent], bool], stage: str) -> None:
  pipeline = build(make_pipeline)
  document = await pipeline.add_document()
  submitted = await pipeline.service.submit(user_id="user-1", document_ref=document.document_id, job_key="deal-1")
  await _read_until(submitted.subscription, reached)

  await pipeline.runner.drain(0.01)

  assert pipeline.runner.active_count == 0
  record = await pipeline.jobs_repo.get_job(submitted.job.job_id)
  assert record is not None
  assert record.status == "failed"
  assert record.error_message == f"Analysis was interrupted during {stage}"

  logs = await pipeline.jobs_repo.list_step_logs(submitted.job.job_id)
  assert [log.step_name for log in logs][-1] == stage
  assert all(log.completed_at is not None for log in logs)
  assert logs[-1].status == "error"
  assert logs[-1].error_message is not None and "cancelled" in logs[-1].error_message

  remaining: list[RelayEvent] = []
  while (event := await submitted.subscription.get()) is not None:
    remaining.append(event)
  assert isinstance(remaining[-1], ErrorEvent)


@pytest.mark.anyio
async def test_runs_interrupted_by_a_restart_are_failed_and_release_their_key(make_pipeline: PipelineFactory) -> None:
  pipeline = make_pipeline()
  document = await pipeline.add_document()
  orphan = await pipeline.add_pending_job(document)

  assert await pipeline.service.fail_interrupted_runs() == 1

  record = await pipeline.jobs_repo.get_job(orphan.job_id)
  assert record is not None
  assert record.status == "failed"
  assert record.error_message == INTERRUPTED_MESSAGE
  assert record.completed_at is not None

  submitted = await pipeline.service.submit(user_id="user-1", document_ref=document.document_id, job_key="deal-1")
  await pipeline.runner.wait(submitted.job.job_id)
  latest = await pipeline.service.get_latest(user_id="user-1", job_key="deal-1")
  assert latest.job_id == submitted.job.job_id
  assert latest.status == "completed"
  assert await pipeline.service.fail_interrupted_runs() == 0
