from __future__ import annotations

import pytest

from deckmemo.core.exceptions import ProtocolError
from deckmemo.streaming.parser import FrameDecoder, decode_payload, decode_stream, reconstruct_text
from deckmemo.streaming.relay import KEEPALIVE_FRAME, DoneEvent, ErrorEvent, QuickFactsEvent, StatusEvent, TextEvent, encode_frame


def test_reconstructs_text_from_deltas_in_order() -> None:
  wire = [encode_frame(StatusEvent(message="Writing investment memo", progress=40, step=3, total_steps=3))]
  wire += [encode_frame(TextEvent(text=part)) for part in ("Hello, ", "world", "!")]
  wire.append(encode_frame(DoneEvent(job_id="job-1")))

  events = decode_stream(wire)

  assert reconstruct_text(events) == "Hello, world!"
  assert events[0] == StatusEvent(message="Writing investment memo", progress=40, step=3, total_steps=3)
  assert events[-1] == DoneEvent(job_id="job-1")


def test_frames_split_across_reads_including_multibyte_characters() -> None:
  wire = encode_frame(TextEvent(text="Café ")) + encode_frame(TextEvent(text="naïve"))
  decoder = FrameDecoder()

  events = []
  # Feed one byte at a time so every line and every UTF-8 sequence is split.
  for index in range(len(wire)):
    events.extend(decoder.feed(wire[index : index + 1]))
  events.extend(decoder.flush())

  assert events == [TextEvent(text="Café "), TextEvent(text="naïve")]


def test_comments_blank_lines_and_unknown_fields_are_ignored() -> None:
  wire = KEEPALIVE_FRAME + b"\n\nid: 7\nretry: 1000\n" + encode_frame(ErrorEvent(error="Text extraction failed"))

  assert decode_stream([wire]) == [ErrorEvent(error="Text extraction failed")]


def test_crlf_line_endings_are_accepted() -> None:
  wire = b'event: delta\r\ndata: {"text":"x"}\r\n\r\n'

  assert decode_stream([wire]) == [TextEvent(text="x")]


def test_trailing_data_line_without_newline_is_flushed() -> None:
  decoder = FrameDecoder()

  assert decoder.feed('data: {"text":"tail"}') == []
  assert decoder.flush() == [TextEvent(text="tail")]


def test_event_type_is_inferred_when_the_event_line_is_missing() -> None:
  wire = 'data: {"data":{"company_name":"Acme"},"progress":40}\n\ndata: {"done":true,"job_id":"job-9"}\n\n'

  assert decode_stream([wire]) == [QuickFactsEvent(data={"company_name": "Acme"}, progress=40), DoneEvent(job_id="job-9")]


def test_invalid_json_is_a_protocol_error() -> None:
  with pytest.raises(ProtocolError):
    decode_stream([b"event: delta\ndata: {not json}\n\n"])


def test_unknown_event_names_are_rejected() -> None:
  with pytest.raises(ProtocolError):
    decode_payload("mystery", {"value": 1})


def test_non_object_payloads_are_rejected() -> None:
  with pytest.raises(ProtocolError):
    decode_payload("delta", ["not", "an", "object"])
