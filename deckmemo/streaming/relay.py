"""Live event fan-out for a single run and its line-delimited wire framing.

One producer (the run) publishes events to a ``ChunkBroadcast``. Each subscriber gets
its own unbounded queue, so publishing never waits on a slow or departed client. The
durable record is written by the run itself; the live relay is best effort.

Frames follow the server-sent events layout::

  event: delta
  data: {"text": "Hello, "}

"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, ClassVar, Union

logger = logging.getLogger(__name__)

KEEPALIVE_FRAME = b": keep-alive\n\n"


@dataclass(frozen=True)
class StatusEvent:
  event_name: ClassVar[str] = "status"

  message: str
  progress: int
  step: int
  total_steps: int

  def payload(self) -> dict[str, Any]:
    return {"message": self.message, "progress": self.progress, "step": self.step, "totalSteps": self.total_steps}


@dataclass(frozen=True)
class QuickFactsEvent:
  event_name: ClassVar[str] = "quick_facts"

  data: dict[str, Any]
  progress: int

  def payload(self) -> dict[str, Any]:
    return {"data": self.data, "progress": self.progress}


@dataclass(frozen=True)
class TextEvent:
  event_name: ClassVar[str] = "delta"

  text: str

  def payload(self) -> dict[str, Any]:
    return {"text": self.text}


@dataclass(frozen=True)
class ErrorEvent:
  event_name: ClassVar[str] = "error"

  error: str

  def payload(self) -> dict[str, Any]:
    return {"error": self.error}


@dataclass(frozen=True)
class DoneEvent:
  event_name: ClassVar[str] = "done"

  job_id: str

  def payload(self) -> dict[str, Any]:
    return {"done": True, "job_id": self.job_id}


RelayEvent = Union[StatusEvent, QuickFactsEvent, TextEvent, ErrorEvent, DoneEvent]  # noqa: UP007


def is_final(event: RelayEvent) -> bool:
  """Error and done frames end a stream."""
  return isinstance(event, ErrorEvent | DoneEvent)


def encode_frame(event: RelayEvent) -> bytes:
  """Render one event as ``event:``/``data:`` lines followed by a blank line."""
  data = json.dumps(event.payload(), ensure_ascii=False, separators=(",", ":"))
  return f"event: {event.event_name}\ndata: {data}\n\n".encode()


class Subscription:
  """One subscriber's view of a broadcast."""

  def __init__(self, broadcast: ChunkBroadcast) -> None:
    self._broadcast = broadcast
    self._queue: asyncio.Queue[RelayEvent | None] = asyncio.Queue()
    self._closed = False

  @property
  def closed(self) -> bool:
    return self._closed

  def deliver(self, event: RelayEvent | None) -> None:
    if not self._closed:
      self._queue.put_nowait(event)

  async def get(self) -> RelayEvent | None:
    """Return the next event, or None once the broadcast has ended."""
    return await self._queue.get()

  def close(self) -> None:
    """Detach from the broadcast; the producer keeps running."""
    if self._closed:
      return
    self._closed = True
    self._broadcast.unsubscribe(self)


class ChunkBroadcast:
  """Single-producer, multi-subscriber event fan-out for one run."""

  def __init__(self, *, job_id: str) -> None:
    self.job_id = job_id
    self._subscribers: list[Subscription] = []
    self._closed = False

  @property
  def subscriber_count(self) -> int:
    return len(self._subscribers)

  def subscribe(self) -> Subscription:
    subscription = Subscription(self)
    if self._closed:
      # Late subscribers see an already-finished stream.
      subscription.deliver(None)
      return subscription
    self._subscribers.append(subscription)
    return subscription

  def unsubscribe(self, subscription: Subscription) -> None:
    if subscription in self._subscribers:
      self._subscribers.remove(subscription)
      logger.info("Relay subscriber detached job_id=%s remaining=%d", self.job_id, len(self._subscribers))

  def publish(self, event: RelayEvent) -> None:
    if self._closed:
      return
    for subscription in list(self._subscribers):
      subscription.deliver(event)

  def close(self) -> None:
    """End the broadcast; subscribers drain what they have and then stop."""
    if self._closed:
      return
    self._closed = True
    for subscription in list(self._subscribers):
      subscription.deliver(None)
    self._subscribers.clear()


async def relay_events(subscription: Subscription, *, keepalive_seconds: float) -> AsyncIterator[bytes]:
  """Yield encoded frames for a streaming response until a final frame or the end of the run.

  Closing this generator (client disconnect) only detaches the subscription.
  """
  try:
    while True:
      try:
        event = await asyncio.wait_for(subscription.get(), timeout=keepalive_seconds)
      except TimeoutError:
        yield KEEPALIVE_FRAME
        continue
      if event is None:
        return
      yield encode_frame(event)
      if is_final(event):
        return
  finally:
    subscription.close()
