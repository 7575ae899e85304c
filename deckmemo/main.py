from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from deckmemo.api.routes import analyses, documents
from deckmemo.config import get_settings
from deckmemo.core.exceptions import DeckmemoError, deckmemo_exception_handler, global_exception_handler, http_exception_handler, request_validation_exception_handler
from deckmemo.core.lifespan import lifespan
from deckmemo.core.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware
from deckmemo.core.security import USER_ID_HEADER

settings = get_settings()

app = FastAPI(title="deckmemo-engine", lifespan=lifespan, docs_url=None, redoc_url=None)

app.add_middleware(CORSMiddleware, allow_origins=list(settings.allowed_origins), allow_credentials=True, allow_methods=["GET", "POST", "OPTIONS"], allow_headers=["content-type", USER_ID_HEADER.lower()], expose_headers=["content-length", "x-request-id", "x-job-id"])


# Add exception handlers
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(DeckmemoError, deckmemo_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)

# Add middleware
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple health status."""
  return {"status": "ok", "version": "0.1.0"}


app.include_router(analyses.router, prefix="/v1/analyses", tags=["analyses"])
app.include_router(documents.router, prefix="/v1/documents", tags=["documents"])
