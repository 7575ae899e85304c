from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
from httpx import ASGITransport, AsyncClient

from deckmemo.ai.results import FatalError
from deckmemo.main import app
from deckmemo.streaming.parser import decode_stream, reconstruct_text
from deckmemo.streaming.relay import DoneEvent, ErrorEvent, QuickFactsEvent, StatusEvent
from tests.fakes import PDF_BYTES, Pipeline, PipelineFactory, ScriptedClient

USER = {"X-User-Id": "user-1"}
OTHER_USER = {"X-User-Id": "user-2"}


@pytest.fixture
async def pipeline(make_pipeline: PipelineFactory) -> AsyncIterator[Pipeline]:
  built = make_pipeline()
  app.state.analysis_service = built.service
  yield built
  del app.state.analysis_service


@pytest.fixture
async def client(pipeline: Pipeline) -> AsyncIterator[AsyncClient]:
  async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
    yield http_client


async def _upload(client: AsyncClient, *, headers: dict[str, str] = USER, job_key: str = "deal-1", body: bytes = PDF_BYTES) -> str:
  response = await client.post("/v1/documents", params={"jobKey": job_key, "fileName": "deck.pdf"}, content=body, headers={**headers, "Content-Type": "application/pdf"})
  assert response.status_code == 201, response.text
  return response.json()["document_id"]


@pytest.mark.anyio
async def test_health(client: AsyncClient) -> None:
  response = await client.get("/health")

  assert response.status_code == 200
  assert response.json()["status"] == "ok"
  assert response.headers["x-content-type-options"] == "nosniff"
  assert "x-request-id" in response.headers


@pytest.mark.anyio
async def test_submit_streams_the_run_and_persists_the_result(client: AsyncClient, pipeline: Pipeline) -> None:
  document_ref = await _upload(client)

  response = await client.post("/v1/analyses", json={"documentRef": document_ref, "jobKey": "deal-1", "notes": "Look at churn"}, headers=USER)

  assert response.status_code == 200
  assert response.headers["content-type"].startswith("text/event-stream")
  job_id = response.headers["x-job-id"]
  events = decode_stream([response.content])
  assert isinstance(events[0], StatusEvent)
  assert events[0].progress == 10
  assert any(isinstance(event, QuickFactsEvent) for event in events)
  assert events[-1] == DoneEvent(job_id=job_id)
  memo = reconstruct_text(events)
  assert memo == "Hello, world!"

  await pipeline.runner.wait(job_id)
  latest = await client.get("/v1/analyses/deal-1", headers=USER)
  assert latest.status_code == 200
  body = latest.json()
  assert body["job_id"] == job_id
  assert body["status"] == "completed"
  assert body["progress_percent"] == 100
  assert body["result"]["full_text"] == memo
  assert body["quick_facts"]["company_name"] == "Acme Robotics"
  assert body["error_message"] is None


@pytest.mark.anyio
async def test_failed_run_ends_the_stream_with_an_error_frame(make_pipeline: PipelineFactory) -> None:
  failing = make_pipeline(extraction=ScriptedClient(FatalError(reason="HTTP 415: Unsupported Media Type", status_code=415)))
  app.state.analysis_service = failing.service
  try:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
      document_ref = await _upload(client)
      response = await client.post("/v1/analyses", json={"documentRef": document_ref, "jobKey": "deal-1"}, headers=USER)
      events = decode_stream([response.content])
      assert isinstance(events[-1], ErrorEvent)
      assert "Text extraction failed" in events[-1].error
      await failing.runner.wait(response.headers["x-job-id"])

      latest = await client.get("/v1/analyses/deal-1", headers=USER)
      assert latest.json()["status"] == "failed"
      assert latest.json()["result"] is None
  finally:
    del app.state.analysis_service


@pytest.mark.anyio
async def test_requests_without_a_user_are_unauthorized(client: AsyncClient) -> None:
  response = await client.post("/v1/analyses", json={"documentRef": "doc-1", "jobKey": "deal-1"})

  assert response.status_code == 401
  assert (await client.get("/v1/analyses/deal-1")).status_code == 401


@pytest.mark.anyio
async def test_submit_error_statuses(client: AsyncClient, pipeline: Pipeline) -> None:
  document_ref = await _upload(client)

  missing = await client.post("/v1/analyses", json={"documentRef": "missing", "jobKey": "deal-1"}, headers=USER)
  foreign = await client.post("/v1/analyses", json={"documentRef": document_ref, "jobKey": "deal-1"}, headers=OTHER_USER)
  invalid = await client.post("/v1/analyses", json={"documentRef": document_ref}, headers=USER)

  assert missing.status_code == 404
  assert foreign.status_code == 403
  assert invalid.status_code == 422
  assert "requestId" in invalid.json()


@pytest.mark.anyio
async def test_second_submission_while_active_is_a_conflict(client: AsyncClient, pipeline: Pipeline) -> None:
  document_ref = await _upload(client)
  document = await pipeline.documents_repo.get_document(document_ref)
  assert document is not None
  active = await pipeline.add_pending_job(document)

  response = await client.post("/v1/analyses", json={"documentRef": document_ref, "jobKey": "deal-1"}, headers=USER)

  assert response.status_code == 409
  assert active.job_id in response.json()["detail"]


@pytest.mark.anyio
async def test_upload_rejects_non_pdf_bodies(client: AsyncClient) -> None:
  response = await client.post("/v1/documents", params={"jobKey": "deal-1"}, content=b"plain text", headers={**USER, "Content-Type": "text/plain"})

  assert response.status_code == 422


@pytest.mark.anyio
async def test_logs_endpoint_lists_step_attempts(client: AsyncClient, pipeline: Pipeline) -> None:
  document_ref = await _upload(client)
  response = await client.post("/v1/analyses", json={"documentRef": document_ref, "jobKey": "deal-1"}, headers=USER)
  await pipeline.runner.wait(response.headers["x-job-id"])

  logs = await client.get("/v1/analyses/deal-1/logs", headers=USER)

  assert logs.status_code == 200
  body = logs.json()
  assert body["status"] == "completed"
  assert [(entry["step_name"], entry["attempt"], entry["status"]) for entry in body["logs"]] == [("extraction", 1, "success"), ("quick_facts", 1, "success"), ("synthesis", 1, "success"), ("finalization", 1, "success")]
  assert (await client.get("/v1/analyses/deal-1/logs", headers=OTHER_USER)).status_code == 403


@pytest.mark.anyio
async def test_events_endpoint_streams_the_finished_record(client: AsyncClient, pipeline: Pipeline) -> None:
  document_ref = await _upload(client)
  response = await client.post("/v1/analyses", json={"documentRef": document_ref, "jobKey": "deal-1"}, headers=USER)
  await pipeline.runner.wait(response.headers["x-job-id"])

  events = await client.get("/v1/analyses/deal-1/events", headers=USER)

  assert events.status_code == 200
  frames = [frame for frame in events.text.split("\n\n") if frame.strip()]
  assert len(frames) == 1
  assert frames[0].startswith("data: ")
  assert '"status":"completed"' in frames[0]
  assert (await client.get("/v1/analyses/deal-9/events", headers=USER)).status_code == 404
