"""Background task registry that keeps pipeline runs alive independently of HTTP requests."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class RunRegistry:
  """Own the asyncio tasks for in-flight runs so a client disconnect never cancels them."""

  def __init__(self) -> None:
    self._tasks: dict[str, asyncio.Task[None]] = {}

  def start(self, job_id: str, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
    if job_id in self._tasks:
      coro.close()
      raise RuntimeError(f"Run for job {job_id} is already registered")
    task = asyncio.create_task(coro, name=f"analysis-run-{job_id}")
    self._tasks[job_id] = task
    task.add_done_callback(lambda finished: self._on_done(job_id, finished))
    logger.info("Run started job_id=%s active_runs=%d", job_id, len(self._tasks))
    return task

  def _on_done(self, job_id: str, task: asyncio.Task[None]) -> None:
    self._tasks.pop(job_id, None)
    if task.cancelled():
      logger.warning("Run cancelled job_id=%s", job_id)
      return
    exc = task.exception()
    if exc is not None:
      logger.error("Run crashed job_id=%s error_type=%s", job_id, type(exc).__name__, exc_info=exc)
      return
    logger.info("Run finished job_id=%s active_runs=%d", job_id, len(self._tasks))

  def get(self, job_id: str) -> asyncio.Task[None] | None:
    return self._tasks.get(job_id)

  @property
  def active_count(self) -> int:
    return len(self._tasks)

  async def wait(self, job_id: str) -> None:
    """Wait for one run to finish; returns immediately when it is not running."""
    task = self._tasks.get(job_id)
    if task is None:
      return
    await asyncio.wait({task})

  async def drain(self, timeout: float) -> None:
    """Wait for in-flight runs during shutdown and cancel whatever is still running."""
    pending = set(self._tasks.values())
    if not pending:
      return
    logger.info("Waiting for %d in-flight runs (timeout=%.1fs)", len(pending), timeout)
    _, still_running = await asyncio.wait(pending, timeout=timeout)
    for task in still_running:
      task.cancel()
    if still_running:
      logger.warning("Cancelled %d runs still in flight at shutdown", len(still_running))
      await asyncio.wait(still_running)
