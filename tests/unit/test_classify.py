from __future__ import annotations

import asyncio
import json

import httpx
import openai
import pytest

from deckmemo.ai.classify import classify_exception, classify_status, is_retriable_status
from deckmemo.ai.results import FatalError, RetriableError

_REQUEST = httpx.Request("POST", "https://api.example.test/v1/chat/completions")


def _status_error(code: int) -> httpx.HTTPStatusError:
  response = httpx.Response(code, request=_REQUEST)
  return httpx.HTTPStatusError(f"HTTP {code}", request=_REQUEST, response=response)


@pytest.mark.parametrize(("code", "retriable"), [(408, True), (425, True), (429, True), (500, True), (503, True), (400, False), (401, False), (404, False), (415, False)])
def test_status_classification(code: int, retriable: bool) -> None:
  assert is_retriable_status(code) is retriable
  result = classify_status(code, "reason")
  assert isinstance(result, RetriableError if retriable else FatalError)
  assert result.status_code == code


def test_timeouts_and_transport_errors_are_retriable() -> None:
  assert isinstance(classify_exception(asyncio.TimeoutError()), RetriableError)
  assert isinstance(classify_exception(httpx.ReadTimeout("slow", request=_REQUEST)), RetriableError)
  assert isinstance(classify_exception(httpx.ConnectError("reset", request=_REQUEST)), RetriableError)
  assert isinstance(classify_exception(openai.APIConnectionError(request=_REQUEST)), RetriableError)


def test_http_status_errors_follow_the_status() -> None:
  assert isinstance(classify_exception(_status_error(502)), RetriableError)
  assert isinstance(classify_exception(_status_error(422)), FatalError)


def test_openai_status_errors_follow_the_status() -> None:
  rate_limited = openai.RateLimitError("rate limited", response=httpx.Response(429, request=_REQUEST), body=None)
  bad_request = openai.BadRequestError("bad request", response=httpx.Response(400, request=_REQUEST), body=None)

  assert classify_exception(rate_limited) == RetriableError(reason="HTTP 429: rate limited", status_code=429)
  assert isinstance(classify_exception(bad_request), FatalError)


def test_malformed_payloads_and_unknown_errors_are_fatal() -> None:
  decode_error = json.JSONDecodeError("Expecting value", "not json", 0)

  assert classify_exception(decode_error).reason.startswith("Malformed response")
  assert classify_exception(KeyError("pages")).reason.startswith("Malformed response")
  assert classify_exception(RuntimeError("boom")) == FatalError(reason="Unexpected error: RuntimeError: boom")
