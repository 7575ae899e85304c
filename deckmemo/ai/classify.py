"""Translate transport exceptions and HTTP statuses into adapter results."""

from __future__ import annotations

import json

import httpx
import openai
import pydantic

from deckmemo.ai.results import FatalError, RetriableError

# 408 and 425 are transient by definition; 429 and 5xx come from overloaded upstreams.
RETRIABLE_STATUS_CODES: frozenset[int] = frozenset({408, 425, 429})


def is_retriable_status(status_code: int) -> bool:
  """Return True when an HTTP status is worth retrying."""
  return status_code in RETRIABLE_STATUS_CODES or status_code >= 500


def classify_status(status_code: int, reason: str) -> RetriableError | FatalError:
  """Classify an HTTP error status."""
  message = f"HTTP {status_code}: {reason}" if reason else f"HTTP {status_code}"
  if is_retriable_status(status_code):
    return RetriableError(reason=message, status_code=status_code)
  return FatalError(reason=message, status_code=status_code)


def classify_exception(exc: BaseException) -> RetriableError | FatalError:
  """
  Classify an exception raised while calling an external service.

  Retriable:
    - timeouts (asyncio, httpx, openai)
    - connection resets and other transport failures
    - HTTP 408, 425, 429 and any 5xx

  Fatal:
    - any other HTTP 4xx (bad request, auth rejection, unsupported media)
    - malformed response bodies
    - anything unrecognised
  """
  if isinstance(exc, TimeoutError | httpx.TimeoutException | openai.APITimeoutError):
    return RetriableError(reason=f"Timed out: {type(exc).__name__}")

  if isinstance(exc, httpx.HTTPStatusError):
    return classify_status(exc.response.status_code, exc.response.reason_phrase)

  if isinstance(exc, openai.APIStatusError):
    return classify_status(exc.status_code, exc.message)

  if isinstance(exc, httpx.TransportError | openai.APIConnectionError):
    return RetriableError(reason=f"Connection failed: {exc}")

  if isinstance(exc, json.JSONDecodeError | pydantic.ValidationError | ValueError | KeyError):
    return FatalError(reason=f"Malformed response: {exc}")

  return FatalError(reason=f"Unexpected error: {type(exc).__name__}: {exc}")
