import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI

from deckmemo.ai.orchestrator import PipelineOrchestrator, PipelineTimeouts
from deckmemo.ai.providers.mistral_ocr import MistralOcrClient
from deckmemo.ai.providers.memo_data import OpenAIMemoDataClient
from deckmemo.ai.providers.openrouter import build_openai_client
from deckmemo.ai.providers.quick_facts import OpenAIQuickFactsClient
from deckmemo.ai.providers.synthesis import OpenAISynthesisClient
from deckmemo.ai.retry import RetryPolicy
from deckmemo.config import Settings
from deckmemo.core.database import create_tables, dispose_engine
from deckmemo.core.logging import initialize_logging
from deckmemo.jobs.runner import RunRegistry
from deckmemo.notifications.alerts import build_alert_sender
from deckmemo.services.analyses import AnalysisService
from deckmemo.storage.change_feed import ChangeFeed, PublishingJobsRepository
from deckmemo.storage.documents import LocalDocumentStore
from deckmemo.storage.documents_repo import DocumentsRepository
from deckmemo.storage.jobs_repo import JobsRepository
from deckmemo.storage.memory_repo import InMemoryDocumentsRepository, InMemoryJobsRepository
from deckmemo.storage.postgres_jobs_repo import PostgresDocumentsRepository, PostgresJobsRepository


def _redact_dsn(raw: str | None) -> str:
  """Redact credentials from a DSN while keeping host/db visible."""
  if not raw:
    return "<unset>"

  parsed = urlparse(raw)
  if not parsed.scheme:
    return "<invalid>"

  host = parsed.hostname or ""
  port = f":{parsed.port}" if parsed.port else ""
  netloc = f"{parsed.username}@{host}{port}" if parsed.username else f"{host}{port}"
  database = parsed.path.lstrip("/")
  return f"{parsed.scheme}://{netloc}/{database}" if database else f"{parsed.scheme}://{netloc}"


def _build_repositories(settings: Settings, logger: logging.Logger) -> tuple[JobsRepository, DocumentsRepository]:
  if settings.pg_dsn:
    logger.info("Using Postgres repositories dsn=%s", _redact_dsn(settings.pg_dsn))
    return PostgresJobsRepository(), PostgresDocumentsRepository()

  # Settings validation refuses a missing DSN in production environments.
  logger.warning("DECKMEMO_PG_DSN is not set; using in-memory repositories (state is lost on restart).")
  return InMemoryJobsRepository(), InMemoryDocumentsRepository()


def build_analysis_service(settings: Settings, *, logger: logging.Logger) -> AnalysisService:
  """Wire repositories, external clients and the orchestrator from settings."""
  jobs_repo, documents_repo = _build_repositories(settings, logger)
  change_feed = ChangeFeed()
  published_jobs = PublishingJobsRepository(jobs_repo, change_feed)
  document_store = LocalDocumentStore(settings.document_root)

  llm_client = build_openai_client(api_key=settings.llm_api_key, base_url=settings.llm_base_url)
  if not settings.ocr_api_key:
    logger.warning("DECKMEMO_OCR_API_KEY is not set; text extraction will fail for every run.")

  orchestrator = PipelineOrchestrator(
    jobs_repo=published_jobs,
    documents_repo=documents_repo,
    document_store=document_store,
    extraction_client=MistralOcrClient(api_key=settings.ocr_api_key, base_url=settings.ocr_base_url, model=settings.ocr_model),
    quick_facts_client=OpenAIQuickFactsClient(client=llm_client, model=settings.quick_facts_model),
    synthesis_client=OpenAISynthesisClient(client=llm_client, model=settings.synthesis_model),
    memo_data_client=OpenAIMemoDataClient(client=llm_client, model=settings.memo_data_model),
    retry_policy=RetryPolicy.from_settings(settings),
    timeouts=PipelineTimeouts.from_settings(settings),
    expected_memo_chars=settings.expected_memo_chars,
    progress_interval_seconds=settings.progress_interval_seconds,
    max_document_bytes=settings.max_document_bytes,
    alert_sender=build_alert_sender(settings),
  )
  return AnalysisService(
    jobs_repo=published_jobs,
    documents_repo=documents_repo,
    document_store=document_store,
    orchestrator=orchestrator,
    runner=RunRegistry(),
    change_feed=change_feed,
    max_document_bytes=settings.max_document_bytes,
  )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Initialize logging and the analysis service, then drain in-flight runs on shutdown."""
  from deckmemo.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("deckmemo.core.lifespan")

  initialize_logging(settings)
  logger.info("Startup complete - logging verified.")

  if settings.pg_dsn and settings.auto_create_tables:
    await create_tables()
    logger.info("Database tables ensured.")

  try:
    service = build_analysis_service(settings, logger=logger)
  except ValueError:
    # Refuse to start without the credentials every run needs.
    logger.error("Service configuration is incomplete; refusing to start.", exc_info=True)
    raise
  if settings.recover_interrupted_runs:
    await service.fail_interrupted_runs()
  app.state.analysis_service = service

  try:
    yield
  finally:
    await service.runner.drain(settings.shutdown_grace_seconds)
    await dispose_engine()
    logger.info("Shutdown complete.")
