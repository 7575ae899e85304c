"""Structured deal data extraction from a finished memo."""

from __future__ import annotations

import json
import logging

import pydantic
from openai import AsyncOpenAI, OpenAIError

from deckmemo.ai.classify import classify_exception
from deckmemo.ai.prompts import MEMO_DATA_SYSTEM, build_memo_data_prompt, strip_json_fences
from deckmemo.ai.results import AdapterResult, FatalError, Success
from deckmemo.ai.schemas import MemoData

logger = logging.getLogger(__name__)


class OpenAIMemoDataClient:
  """Ask a fast model for the memo's deal fields as JSON."""

  def __init__(self, *, client: AsyncOpenAI, model: str, max_tokens: int = 600) -> None:
    self._client = client
    self._model = model
    self._max_tokens = max_tokens

  async def invoke(self, payload: str, timeout: float) -> AdapterResult:
    """Return Success(MemoData) with unusable values already dropped."""
    if not payload.strip():
      return FatalError(reason="No memo text to extract data from")

    messages = [{"role": "system", "content": MEMO_DATA_SYSTEM}, {"role": "user", "content": build_memo_data_prompt(payload)}]
    try:
      response = await self._client.chat.completions.create(model=self._model, messages=messages, temperature=0, max_tokens=self._max_tokens, response_format={"type": "json_object"}, timeout=timeout)
    except OpenAIError as exc:
      logger.warning("Memo data request failed error_type=%s error=%s", type(exc).__name__, exc)
      return classify_exception(exc)

    content = response.choices[0].message.content if response.choices else None
    if not content:
      return FatalError(reason="Memo data reply was empty")

    try:
      raw = json.loads(strip_json_fences(content))
    except json.JSONDecodeError as exc:
      logger.warning("Memo data reply was not valid JSON raw=%s", content[:500])
      return FatalError(reason=f"Memo data reply was malformed: {exc}")
    if not isinstance(raw, dict):
      return FatalError(reason="Memo data reply was not a JSON object")

    try:
      data = MemoData.model_validate(raw)
    except pydantic.ValidationError as exc:
      return FatalError(reason=f"Memo data reply was malformed: {exc}")

    logger.info("Memo data extracted fields=%d", data.field_count())
    return Success(data)
