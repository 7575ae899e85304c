"""Quick facts extraction over a chat completion endpoint."""

from __future__ import annotations

import json
import logging

import pydantic
from openai import AsyncOpenAI, OpenAIError

from deckmemo.ai.classify import classify_exception
from deckmemo.ai.prompts import QUICK_FACTS_SYSTEM, build_quick_facts_prompt, strip_json_fences
from deckmemo.ai.results import AdapterResult, FatalError, Success
from deckmemo.ai.schemas import QuickFacts

logger = logging.getLogger(__name__)


class OpenAIQuickFactsClient:
  """Ask a fast model for headline facts as JSON."""

  def __init__(self, *, client: AsyncOpenAI, model: str, max_tokens: int = 600) -> None:
    self._client = client
    self._model = model
    self._max_tokens = max_tokens

  async def invoke(self, payload: str, timeout: float) -> AdapterResult:
    """Return Success(QuickFacts) parsed from the model reply."""
    if not payload.strip():
      return FatalError(reason="No deck text to extract facts from")

    messages = [{"role": "system", "content": QUICK_FACTS_SYSTEM}, {"role": "user", "content": build_quick_facts_prompt(payload)}]
    try:
      response = await self._client.chat.completions.create(model=self._model, messages=messages, temperature=0, max_tokens=self._max_tokens, response_format={"type": "json_object"}, timeout=timeout)
    except OpenAIError as exc:
      logger.warning("Quick facts request failed error_type=%s error=%s", type(exc).__name__, exc)
      return classify_exception(exc)

    content = response.choices[0].message.content if response.choices else None
    if not content:
      return FatalError(reason="Quick facts reply was empty")

    # Parse the model response; invalid JSON is not retried.
    try:
      facts = QuickFacts.model_validate(json.loads(strip_json_fences(content)))
    except (json.JSONDecodeError, pydantic.ValidationError) as exc:
      logger.warning("Quick facts reply was not valid JSON raw=%s", content[:500])
      return FatalError(reason=f"Quick facts reply was malformed: {exc}")

    logger.info("Quick facts extracted company=%s sector=%s", facts.company_name, facts.sector)
    return Success(facts)
