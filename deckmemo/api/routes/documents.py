import logging

from fastapi import APIRouter, Depends, Query, Request, status

from deckmemo.api.deps import get_analysis_service
from deckmemo.api.models import DocumentResponse
from deckmemo.core.exceptions import ValidationError
from deckmemo.core.security import get_current_user_id
from deckmemo.services.analyses import AnalysisService

router = APIRouter()
logger = logging.getLogger("deckmemo.api.routes.documents")


async def _read_body(request: Request, limit: int) -> bytes:
  """Read the request body, stopping as soon as it exceeds the limit."""
  declared = request.headers.get("content-length")
  if declared is not None and declared.isdigit() and int(declared) > limit:
    raise ValidationError(f"Document exceeds the {limit} byte limit")

  chunks: list[bytes] = []
  received = 0
  async for chunk in request.stream():
    received += len(chunk)
    if received > limit:
      raise ValidationError(f"Document exceeds the {limit} byte limit")
    chunks.append(chunk)
  return b"".join(chunks)


@router.post("", response_model=DocumentResponse, status_code=status.HTTP_201_CREATED)
async def upload_document(  # noqa: B008
  request: Request,
  job_key: str = Query(alias="jobKey", min_length=1),  # noqa: B008
  file_name: str = Query(default="", alias="fileName", max_length=255),  # noqa: B008
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  service: AnalysisService = Depends(get_analysis_service),  # noqa: B008
) -> DocumentResponse:
  """Store a raw PDF deck body for a deal."""
  data = await _read_body(request, service.max_document_bytes)
  content_type = (request.headers.get("content-type") or "application/pdf").split(";")[0].strip()
  record = await service.upload_document(user_id=user_id, job_key=job_key, file_name=file_name, content_type=content_type, data=data)
  return DocumentResponse.from_record(record)
