"""OpenAI-compatible client construction (OpenRouter by default) using the openai SDK."""

from __future__ import annotations

import os

from openai import AsyncOpenAI


def build_openai_client(*, api_key: str | None, base_url: str) -> AsyncOpenAI:
  """Build an AsyncOpenAI client; retries are disabled because the pipeline runs its own retry loop."""
  if not api_key:
    raise ValueError("DECKMEMO_LLM_API_KEY is required to call the language model endpoint")

  # OpenRouter uses the OpenAI-compatible API; we add optional attribution headers.
  default_headers = {}
  referer = os.getenv("OPENROUTER_HTTP_REFERER")
  if referer:
    default_headers["HTTP-Referer"] = referer
  title = os.getenv("OPENROUTER_TITLE")
  if title:
    default_headers["X-Title"] = title

  return AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0, default_headers=default_headers or None)
