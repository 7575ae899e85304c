"""Storage interfaces for uploaded deck metadata."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass
class DocumentRecord:
  """Metadata row for an uploaded deck."""

  document_id: str
  user_id: str
  job_key: str
  file_name: str
  storage_path: str
  content_type: str
  size_bytes: int
  created_at: str
  extracted_text: str | None = None


class DocumentsRepository(Protocol):
  """Repository contract for deck metadata."""

  async def create_document(self, record: DocumentRecord) -> None:
    """Persist metadata for a freshly stored deck."""

  async def get_document(self, document_id: str) -> DocumentRecord | None:
    """Fetch deck metadata by identifier."""

  async def set_extracted_text(self, document_id: str, text: str) -> None:
    """Store the OCR output for a deck."""
