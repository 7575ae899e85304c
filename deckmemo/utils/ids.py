"""Identifier and timestamp helpers shared by jobs and storage."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime


def generate_job_id() -> str:
  """Return a new analysis job identifier."""
  return str(uuid.uuid4())


def generate_log_id() -> str:
  """Return a new workflow step log identifier."""
  return str(uuid.uuid4())


def generate_document_id() -> str:
  """Return a new document identifier."""
  return str(uuid.uuid4())


def now_iso() -> str:
  """Return the current UTC time as an ISO-8601 string with millisecond precision."""
  return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
  """Parse timestamps produced by ``now_iso`` back into aware datetimes."""
  return datetime.fromisoformat(value.replace("Z", "+00:00"))


def to_iso(value: datetime | None) -> str | None:
  """Render an aware datetime the same way ``now_iso`` does."""
  if value is None:
    return None
  if value.tzinfo is None:
    value = value.replace(tzinfo=UTC)
  return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
