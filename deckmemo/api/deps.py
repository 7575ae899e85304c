"""Shared FastAPI dependencies."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from deckmemo.config import Settings, get_settings
from deckmemo.services.analyses import AnalysisService


def get_analysis_service(request: Request) -> AnalysisService:
  """Return the service built during application startup."""
  service = getattr(request.app.state, "analysis_service", None)
  if service is None:
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Analysis service is not ready")
  return service


def get_app_settings() -> Settings:
  return get_settings()
