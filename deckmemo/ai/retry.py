"""Bounded retry with exponential backoff for external adapter calls."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

from deckmemo.ai.classify import classify_exception
from deckmemo.ai.results import AdapterResult, FatalError, RetriableError
from deckmemo.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
  """Attempt limit and backoff curve shared by all pipeline stages."""

  max_attempts: int = 3
  base_delay_ms: int = 500
  max_delay_ms: int = 5000
  jitter: bool = True

  @classmethod
  def from_settings(cls, settings: Settings) -> RetryPolicy:
    return cls(max_attempts=settings.retry_max_attempts, base_delay_ms=settings.retry_base_delay_ms, max_delay_ms=settings.retry_max_delay_ms)

  def backoff_seconds(self, attempt: int) -> float:
    """Return the delay before the attempt after ``attempt`` (1-based)."""
    backoff_ms = float(min(self.base_delay_ms * (2 ** (attempt - 1)), self.max_delay_ms))
    if self.jitter:
      # Add +/-25% jitter to avoid thundering herd
      jitter_range = backoff_ms * 0.25
      backoff_ms += random.uniform(-jitter_range, jitter_range)
    return max(0.0, min(backoff_ms, float(self.max_delay_ms))) / 1000.0


class AttemptObserver(Protocol):
  """Receives a callback around every attempt, used for step logging."""

  async def attempt_started(self, attempt: int) -> None: ...

  async def attempt_finished(self, attempt: int, result: AdapterResult) -> None: ...


async def invoke_with_retry(
  *,
  operation_name: str,
  func: Callable[[], Awaitable[AdapterResult]],
  policy: RetryPolicy,
  timeout_seconds: float | None = None,
  observer: AttemptObserver | None = None,
  sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> AdapterResult:
  """
  Call ``func`` until it succeeds, fails fatally, or the attempts run out.

  Args:
    operation_name: Human-readable name for logging (e.g., "extraction")
    func: Async callable returning an adapter result
    policy: Attempt limit and backoff curve
    timeout_seconds: Per-attempt deadline; expiry counts as a retriable failure
    observer: Optional hooks called around every attempt
    sleep: Injected for tests

  Returns:
    The first Success or FatalError, or a FatalError once retriable failures are exhausted.
  """
  attempt = 0
  result: AdapterResult = FatalError(reason=f"{operation_name} was never attempted")

  while attempt < policy.max_attempts:
    attempt += 1
    if observer is not None:
      await observer.attempt_started(attempt)

    try:
      if timeout_seconds is not None:
        result = await asyncio.wait_for(func(), timeout=timeout_seconds)
      else:
        result = await func()
    except asyncio.CancelledError:
      # Close the attempt's step row before the cancellation propagates.
      logger.warning("Adapter call cancelled operation=%s attempt=%d/%d", operation_name, attempt, policy.max_attempts)
      if observer is not None:
        await observer.attempt_finished(attempt, FatalError(reason=f"{operation_name} was cancelled"))
      raise
    except Exception as exc:  # noqa: BLE001
      result = classify_exception(exc)
      logger.warning("Adapter call raised operation=%s attempt=%d/%d error_type=%s kind=%s", operation_name, attempt, policy.max_attempts, type(exc).__name__, result.kind, exc_info=isinstance(result, FatalError))

    if observer is not None:
      await observer.attempt_finished(attempt, result)

    if not isinstance(result, RetriableError):
      if attempt > 1 and result.kind == "success":
        logger.info("Adapter call succeeded after retry: operation=%s, attempt=%d/%d", operation_name, attempt, policy.max_attempts)
      if isinstance(result, FatalError):
        logger.error("Adapter call failed with non-retriable error: operation=%s, attempt=%d/%d, reason=%s", operation_name, attempt, policy.max_attempts, result.reason)
      return result

    if attempt >= policy.max_attempts:
      logger.error("Adapter call failed after %d attempts: operation=%s, reason=%s - giving up", policy.max_attempts, operation_name, result.reason)
      return FatalError(reason=f"{operation_name} failed after {policy.max_attempts} attempts: {result.reason}", status_code=result.status_code)

    delay = policy.backoff_seconds(attempt)
    logger.info("Retrying adapter call after backoff: operation=%s, attempt=%d/%d, backoff_ms=%.1f, reason=%s", operation_name, attempt, policy.max_attempts, delay * 1000, result.reason)
    await sleep(delay)

  return result
