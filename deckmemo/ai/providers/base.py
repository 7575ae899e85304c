"""Adapter contracts for the external services the pipeline calls."""

from __future__ import annotations

from typing import Protocol

from deckmemo.ai.results import AdapterResult
from deckmemo.ai.schemas import SynthesisRequest


class ExtractionClient(Protocol):
  """Turns document bytes into plain text."""

  async def invoke(self, payload: bytes, timeout: float) -> AdapterResult:
    """Return Success(str) with the extracted text."""


class QuickFactsClient(Protocol):
  """Pulls headline facts from extracted text."""

  async def invoke(self, payload: str, timeout: float) -> AdapterResult:
    """Return Success(QuickFacts)."""


class SynthesisClient(Protocol):
  """Streams the investment memo."""

  async def invoke(self, payload: SynthesisRequest, timeout: float) -> AdapterResult:
    """Open the stream and return Success(AsyncIterator[str]) yielding text chunks in order."""


class MemoDataClient(Protocol):
  """Pulls structured deal fields from the finished memo."""

  async def invoke(self, payload: str, timeout: float) -> AdapterResult:
    """Return Success(MemoData)."""
