"""Streaming investment memo synthesis over a chat completion endpoint."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx
from openai import APIError, AsyncOpenAI, OpenAIError

from deckmemo.ai.classify import classify_exception
from deckmemo.ai.prompts import SYNTHESIS_SYSTEM, build_synthesis_prompt
from deckmemo.ai.results import AdapterResult, RetriableError, Success
from deckmemo.ai.schemas import SynthesisRequest
from deckmemo.core.exceptions import ExternalServiceError, ProtocolError

logger = logging.getLogger(__name__)


class OpenAISynthesisClient:
  """Stream the memo from a long-context model."""

  def __init__(self, *, client: AsyncOpenAI, model: str, max_tokens: int = 8000) -> None:
    self._client = client
    self._model = model
    self._max_tokens = max_tokens

  async def invoke(self, payload: SynthesisRequest, timeout: float) -> AdapterResult:
    """Open the completion stream; the returned iterator yields text deltas."""
    messages = [{"role": "system", "content": SYNTHESIS_SYSTEM}, {"role": "user", "content": build_synthesis_prompt(payload)}]
    try:
      stream = await self._client.chat.completions.create(model=self._model, messages=messages, max_tokens=self._max_tokens, stream=True, timeout=timeout)
    except OpenAIError as exc:
      logger.warning("Synthesis stream failed to open error_type=%s error=%s", type(exc).__name__, exc)
      return classify_exception(exc)

    return Success(self._iter_text(stream))

  async def _iter_text(self, stream: Any) -> AsyncIterator[str]:
    chunk_count = 0
    try:
      async for chunk in stream:
        choices = getattr(chunk, "choices", None)
        if choices is None:
          raise ProtocolError(f"Synthesis stream chunk without choices: {chunk!r}")
        if not choices:
          continue
        text = choices[0].delta.content if choices[0].delta is not None else None
        if text:
          chunk_count += 1
          yield text
    except (APIError, httpx.HTTPError) as exc:
      result = classify_exception(exc)
      logger.warning("Synthesis stream broke after chunks=%d error_type=%s", chunk_count, type(exc).__name__)
      raise ExternalServiceError(f"Synthesis stream interrupted: {result.reason}", retriable=isinstance(result, RetriableError)) from exc
    finally:
      close = getattr(stream, "close", None)
      if close is not None:
        await close()
