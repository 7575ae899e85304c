"""Receiver-side decoding of relay frames.

Network reads can split a frame anywhere, including inside a line or a multi-byte
character, so the decoder buffers until it sees a complete line.
"""

from __future__ import annotations

import codecs
import json
from collections.abc import Iterable
from typing import Any

from deckmemo.core.exceptions import ProtocolError
from deckmemo.streaming.relay import DoneEvent, ErrorEvent, QuickFactsEvent, RelayEvent, StatusEvent, TextEvent


def decode_payload(event_name: str | None, payload: Any) -> RelayEvent:
  """Build a typed event from a data payload, using the event name when present."""
  if not isinstance(payload, dict):
    raise ProtocolError(f"Frame data must be a JSON object, got {type(payload).__name__}")

  name = event_name
  if name is None:
    # Infer the type from the payload shape when the event line is missing.
    if "text" in payload:
      name = "delta"
    elif "error" in payload:
      name = "error"
    elif "done" in payload:
      name = "done"
    elif "data" in payload:
      name = "quick_facts"
    elif "message" in payload:
      name = "status"

  try:
    if name == "delta":
      return TextEvent(text=str(payload["text"]))
    if name == "error":
      return ErrorEvent(error=str(payload.get("error") or payload.get("message") or "Unknown error"))
    if name == "done":
      return DoneEvent(job_id=str(payload.get("job_id") or ""))
    if name == "quick_facts":
      return QuickFactsEvent(data=dict(payload["data"]), progress=int(payload.get("progress") or 0))
    if name == "status":
      return StatusEvent(message=str(payload["message"]), progress=int(payload.get("progress") or 0), step=int(payload.get("step") or 0), total_steps=int(payload.get("totalSteps") or 0))
  except (KeyError, TypeError, ValueError) as exc:
    raise ProtocolError(f"Malformed {name} frame: {exc}") from exc

  raise ProtocolError(f"Unknown frame type {name!r}")


class FrameDecoder:
  """Incrementally turn raw stream reads into relay events."""

  def __init__(self) -> None:
    self._text_decoder = codecs.getincrementaldecoder("utf-8")()
    self._buffer = ""
    self._event_name: str | None = None

  def feed(self, data: bytes | str) -> list[RelayEvent]:
    """Consume one read and return every event completed by it."""
    if isinstance(data, bytes):
      data = self._text_decoder.decode(data)
    self._buffer += data
    events: list[RelayEvent] = []
    while True:
      newline = self._buffer.find("\n")
      if newline == -1:
        break
      line = self._buffer[:newline].rstrip("\r")
      self._buffer = self._buffer[newline + 1 :]
      event = self._handle_line(line)
      if event is not None:
        events.append(event)
    return events

  def flush(self) -> list[RelayEvent]:
    """Handle a trailing line left without a newline at end of stream."""
    remainder = self._buffer + self._text_decoder.decode(b"", final=True)
    self._buffer = ""
    if not remainder.strip():
      return []
    event = self._handle_line(remainder.rstrip("\r"))
    return [event] if event is not None else []

  def _handle_line(self, line: str) -> RelayEvent | None:
    # A blank line ends a frame.
    if not line.strip():
      self._event_name = None
      return None
    if line.startswith(":"):
      return None
    if line.startswith("event:"):
      self._event_name = line[len("event:") :].strip() or None
      return None
    if line.startswith("data:"):
      raw = line[len("data:") :].strip()
      try:
        payload = json.loads(raw)
      except json.JSONDecodeError as exc:
        raise ProtocolError(f"Frame data is not valid JSON: {raw[:200]!r}") from exc
      return decode_payload(self._event_name, payload)
    # Other SSE fields (id, retry) carry nothing for this stream.
    return None


def decode_stream(chunks: Iterable[bytes | str]) -> list[RelayEvent]:
  """Decode a complete sequence of reads."""
  decoder = FrameDecoder()
  events: list[RelayEvent] = []
  for chunk in chunks:
    events.extend(decoder.feed(chunk))
  events.extend(decoder.flush())
  return events


def reconstruct_text(events: Iterable[RelayEvent]) -> str:
  """Concatenate text events in order; every other event type is ignored."""
  return "".join(event.text for event in events if isinstance(event, TextEvent))
