import json
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from deckmemo.api.deps import get_analysis_service, get_app_settings
from deckmemo.api.models import AnalysisResponse, StepLogListResponse, StepLogResponse, SubmitAnalysisRequest
from deckmemo.config import Settings
from deckmemo.core.security import get_current_user_id
from deckmemo.jobs.models import JobRecord
from deckmemo.services.analyses import AnalysisService
from deckmemo.streaming.relay import relay_events

router = APIRouter()
logger = logging.getLogger("deckmemo.api.routes.analyses")

_STREAM_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


@router.post("")
async def submit_analysis(  # noqa: B008
  payload: SubmitAnalysisRequest,
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  service: AnalysisService = Depends(get_analysis_service),  # noqa: B008
  settings: Settings = Depends(get_app_settings),  # noqa: B008
) -> StreamingResponse:
  """Start an analysis and stream its progress, quick facts and memo text."""
  submitted = await service.submit(user_id=user_id, document_ref=payload.document_ref, job_key=payload.job_key, notes=payload.notes)
  headers = {**_STREAM_HEADERS, "X-Job-Id": submitted.job.job_id}
  return StreamingResponse(relay_events(submitted.subscription, keepalive_seconds=settings.stream_keepalive_seconds), media_type="text/event-stream", headers=headers)


@router.get("/{job_key}", response_model=AnalysisResponse)
async def get_analysis(  # noqa: B008
  job_key: str,
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  service: AnalysisService = Depends(get_analysis_service),  # noqa: B008
) -> AnalysisResponse:
  """Fetch the latest analysis for a deal."""
  record = await service.get_latest(user_id=user_id, job_key=job_key)
  return AnalysisResponse.from_record(record)


def _record_frame(record: JobRecord) -> bytes:
  data = AnalysisResponse.from_record(record).model_dump(mode="json")
  return f"data: {json.dumps(data, ensure_ascii=False, separators=(',', ':'))}\n\n".encode()


async def _change_frames(records: AsyncIterator[JobRecord]) -> AsyncIterator[bytes]:
  async for record in records:
    yield _record_frame(record)


@router.get("/{job_key}/events")
async def watch_analysis(  # noqa: B008
  job_key: str,
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  service: AnalysisService = Depends(get_analysis_service),  # noqa: B008
) -> StreamingResponse:
  """Stream the latest analysis record and each later change until it finishes."""
  records = await service.watch(user_id=user_id, job_key=job_key)
  return StreamingResponse(_change_frames(records), media_type="text/event-stream", headers=_STREAM_HEADERS)


@router.get("/{job_key}/logs", response_model=StepLogListResponse)
async def list_step_logs(  # noqa: B008
  job_key: str,
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  service: AnalysisService = Depends(get_analysis_service),  # noqa: B008
) -> StepLogListResponse:
  """Return the workflow step logs of the latest analysis for a deal."""
  record, logs = await service.list_step_logs(user_id=user_id, job_key=job_key)
  return StepLogListResponse(job_id=record.job_id, job_key=record.job_key, status=record.status, logs=[StepLogResponse.from_record(log) for log in logs])
