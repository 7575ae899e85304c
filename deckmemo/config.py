"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from deckmemo.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)

_PRODUCTION_ENVIRONMENTS = {"production", "prod", "stage", "staging"}


@dataclass(frozen=True)
class Settings:
  """Typed settings for the deck analysis service."""

  environment: str
  debug: bool
  allowed_origins: tuple[str, ...]
  log_dir: str
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  auto_create_tables: bool
  document_root: str
  max_document_bytes: int
  ocr_api_key: str | None
  ocr_base_url: str
  ocr_model: str
  ocr_timeout_seconds: float
  llm_api_key: str | None
  llm_base_url: str
  quick_facts_model: str
  quick_facts_timeout_seconds: float
  synthesis_model: str
  synthesis_open_timeout_seconds: float
  synthesis_timeout_seconds: float
  memo_data_model: str
  memo_data_timeout_seconds: float
  retry_max_attempts: int
  retry_base_delay_ms: int
  retry_max_delay_ms: int
  progress_interval_seconds: float
  expected_memo_chars: int
  stream_keepalive_seconds: float
  shutdown_grace_seconds: float
  recover_interrupted_runs: bool
  alerts_enabled: bool
  alert_to_address: str | None
  alert_from_address: str | None
  mailersend_api_key: str | None
  mailersend_base_url: str
  mailersend_timeout_seconds: float

  @property
  def is_production(self) -> bool:
    """Return True for deployed environments that must not fall back to in-memory storage."""
    return self.environment in _PRODUCTION_ENVIRONMENTS


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    raise ValueError("DECKMEMO_ALLOWED_ORIGINS must be set to one or more origins.")

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("DECKMEMO_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("DECKMEMO_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _positive_float(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("DECKMEMO_ENV", "development").strip().lower()

  # Toggle verbose error output and diagnostics in non-production environments.
  debug = _parse_bool(os.getenv("DECKMEMO_DEBUG"))

  log_max_bytes = _positive_int("DECKMEMO_LOG_MAX_BYTES", "5242880")  # 5MB default
  log_backup_count = int(os.getenv("DECKMEMO_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("DECKMEMO_LOG_BACKUP_COUNT must be zero or a positive integer.")

  # Allow opt-in logging of 4xx HTTPExceptions for diagnostics.
  log_http_4xx = _parse_bool(os.getenv("DECKMEMO_LOG_HTTP_4XX"))

  pg_dsn = _optional_str(os.getenv("DECKMEMO_PG_DSN")) or _optional_str(os.getenv("DATABASE_URL"))
  if pg_dsn is None and environment in _PRODUCTION_ENVIRONMENTS:
    raise ValueError("DECKMEMO_PG_DSN must be set in production environments.")

  # Pipeline retry policy shared by all external adapters.
  retry_max_attempts = _positive_int("DECKMEMO_RETRY_MAX_ATTEMPTS", "3")
  retry_base_delay_ms = _positive_int("DECKMEMO_RETRY_BASE_DELAY_MS", "500")
  retry_max_delay_ms = _positive_int("DECKMEMO_RETRY_MAX_DELAY_MS", "5000")
  if retry_max_delay_ms < retry_base_delay_ms:
    raise ValueError("DECKMEMO_RETRY_MAX_DELAY_MS must be greater than or equal to DECKMEMO_RETRY_BASE_DELAY_MS.")

  alerts_enabled = _parse_bool(os.getenv("DECKMEMO_ALERTS_ENABLED"))
  alert_to_address = _optional_str(os.getenv("DECKMEMO_ALERT_TO_ADDRESS"))
  alert_from_address = _optional_str(os.getenv("DECKMEMO_ALERT_FROM_ADDRESS"))
  mailersend_api_key = _optional_str(os.getenv("DECKMEMO_MAILERSEND_API_KEY"))

  # Validate alert settings only when failure alerts are enabled.
  if alerts_enabled:
    if not alert_to_address:
      raise ValueError("DECKMEMO_ALERT_TO_ADDRESS must be set when alerts are enabled.")

    if not alert_from_address:
      raise ValueError("DECKMEMO_ALERT_FROM_ADDRESS must be set when alerts are enabled.")

    if not mailersend_api_key:
      raise ValueError("DECKMEMO_MAILERSEND_API_KEY must be set when alerts are enabled.")

  return Settings(
    environment=environment,
    debug=debug,
    allowed_origins=_parse_origins(os.getenv("DECKMEMO_ALLOWED_ORIGINS")),
    log_dir=(os.getenv("DECKMEMO_LOG_DIR") or "./logs").strip(),
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=log_http_4xx,
    pg_dsn=pg_dsn,
    pg_connect_timeout=_positive_int("DECKMEMO_PG_CONNECT_TIMEOUT", "5"),
    auto_create_tables=_parse_bool(os.getenv("DECKMEMO_AUTO_CREATE_TABLES")),
    document_root=(os.getenv("DECKMEMO_DOCUMENT_ROOT") or "./documents").strip(),
    max_document_bytes=_positive_int("DECKMEMO_MAX_DOCUMENT_BYTES", str(50 * 1024 * 1024)),
    ocr_api_key=_optional_str(os.getenv("DECKMEMO_OCR_API_KEY")),
    ocr_base_url=(os.getenv("DECKMEMO_OCR_BASE_URL") or "https://api.mistral.ai").strip(),
    ocr_model=(os.getenv("DECKMEMO_OCR_MODEL") or "mistral-ocr-latest").strip(),
    ocr_timeout_seconds=_positive_float("DECKMEMO_OCR_TIMEOUT_SECONDS", "300"),
    llm_api_key=_optional_str(os.getenv("DECKMEMO_LLM_API_KEY")),
    llm_base_url=(os.getenv("DECKMEMO_LLM_BASE_URL") or "https://openrouter.ai/api/v1").strip(),
    quick_facts_model=(os.getenv("DECKMEMO_QUICK_FACTS_MODEL") or "openai/gpt-4o-mini").strip(),
    quick_facts_timeout_seconds=_positive_float("DECKMEMO_QUICK_FACTS_TIMEOUT_SECONDS", "30"),
    synthesis_model=(os.getenv("DECKMEMO_SYNTHESIS_MODEL") or "anthropic/claude-sonnet-4").strip(),
    synthesis_open_timeout_seconds=_positive_float("DECKMEMO_SYNTHESIS_OPEN_TIMEOUT_SECONDS", "60"),
    synthesis_timeout_seconds=_positive_float("DECKMEMO_SYNTHESIS_TIMEOUT_SECONDS", "600"),
    memo_data_model=(os.getenv("DECKMEMO_MEMO_DATA_MODEL") or "openai/gpt-4o-mini").strip(),
    memo_data_timeout_seconds=_positive_float("DECKMEMO_MEMO_DATA_TIMEOUT_SECONDS", "60"),
    retry_max_attempts=retry_max_attempts,
    retry_base_delay_ms=retry_base_delay_ms,
    retry_max_delay_ms=retry_max_delay_ms,
    progress_interval_seconds=_positive_float("DECKMEMO_PROGRESS_INTERVAL_SECONDS", "2"),
    expected_memo_chars=_positive_int("DECKMEMO_EXPECTED_MEMO_CHARS", "6000"),
    stream_keepalive_seconds=_positive_float("DECKMEMO_STREAM_KEEPALIVE_SECONDS", "15"),
    shutdown_grace_seconds=_positive_float("DECKMEMO_SHUTDOWN_GRACE_SECONDS", "30"),
    recover_interrupted_runs=_parse_bool(os.getenv("DECKMEMO_RECOVER_INTERRUPTED_RUNS", "true")),
    alerts_enabled=alerts_enabled,
    alert_to_address=alert_to_address,
    alert_from_address=alert_from_address,
    mailersend_api_key=mailersend_api_key,
    mailersend_base_url=(os.getenv("DECKMEMO_MAILERSEND_BASE_URL") or "https://api.mailersend.com/v1").strip(),
    mailersend_timeout_seconds=_positive_float("DECKMEMO_MAILERSEND_TIMEOUT_SECONDS", "10"),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration like CORS."""
  # Keep database configuration isolated so offline scripts don't require unrelated env vars.
  debug = _parse_bool(os.getenv("DECKMEMO_DEBUG"))
  pg_connect_timeout = int(os.getenv("DECKMEMO_PG_CONNECT_TIMEOUT", "5"))
  if pg_connect_timeout <= 0:
    raise ValueError("DECKMEMO_PG_CONNECT_TIMEOUT must be a positive integer.")

  pg_dsn = _optional_str(os.getenv("DECKMEMO_PG_DSN")) or _optional_str(os.getenv("DATABASE_URL"))

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)
