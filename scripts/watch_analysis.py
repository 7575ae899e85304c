"""Submit an analysis against a running service and print the memo as it streams.

Usage:
  python scripts/watch_analysis.py --user u1 --job-key deal-1 --document-ref doc-1
  python scripts/watch_analysis.py --user u1 --job-key deal-1 --pdf deck.pdf
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

import httpx

# Add the project root to the path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from deckmemo.streaming.parser import FrameDecoder, reconstruct_text  # noqa: E402
from deckmemo.streaming.relay import DoneEvent, ErrorEvent, QuickFactsEvent, RelayEvent, StatusEvent, TextEvent  # noqa: E402


def _parse_args() -> argparse.Namespace:
  parser = argparse.ArgumentParser(description="Stream a deck analysis from the API.")
  parser.add_argument("--base-url", default=os.getenv("DECKMEMO_BASE_URL", "http://localhost:8000"))
  parser.add_argument("--user", required=True, help="User id forwarded as X-User-Id.")
  parser.add_argument("--job-key", required=True)
  parser.add_argument("--document-ref", help="Existing document id to analyse.")
  parser.add_argument("--pdf", type=Path, help="Upload this PDF first and analyse it.")
  parser.add_argument("--notes")
  args = parser.parse_args()
  if not args.document_ref and not args.pdf:
    parser.error("one of --document-ref or --pdf is required")
  return args


async def _upload(client: httpx.AsyncClient, args: argparse.Namespace) -> str:
  response = await client.post("/v1/documents", params={"jobKey": args.job_key, "fileName": args.pdf.name}, content=args.pdf.read_bytes(), headers={"Content-Type": "application/pdf"})
  response.raise_for_status()
  document_id = response.json()["document_id"]
  print(f"Uploaded {args.pdf} as {document_id}", file=sys.stderr)
  return document_id


def _report(event: RelayEvent) -> None:
  if isinstance(event, TextEvent):
    print(event.text, end="", flush=True)
  elif isinstance(event, StatusEvent):
    print(f"[{event.progress:>3}%] step {event.step}/{event.total_steps}: {event.message}", file=sys.stderr)
  elif isinstance(event, QuickFactsEvent):
    print(f"[{event.progress:>3}%] quick facts: {event.data}", file=sys.stderr)
  elif isinstance(event, ErrorEvent):
    print(f"\nAnalysis failed: {event.error}", file=sys.stderr)
  elif isinstance(event, DoneEvent):
    print(f"\nAnalysis {event.job_id} completed.", file=sys.stderr)


async def main() -> int:
  args = _parse_args()
  headers = {"X-User-Id": args.user}
  async with httpx.AsyncClient(base_url=args.base_url, headers=headers, timeout=httpx.Timeout(30.0, read=None)) as client:
    document_ref = args.document_ref or await _upload(client, args)
    body = {"documentRef": document_ref, "jobKey": args.job_key, "notes": args.notes}
    decoder = FrameDecoder()
    events: list[RelayEvent] = []
    async with client.stream("POST", "/v1/analyses", json=body) as response:
      if response.status_code != 200:
        await response.aread()
        print(f"Submit rejected ({response.status_code}): {response.text}", file=sys.stderr)
        return 1
      async for raw in response.aiter_bytes():
        for event in decoder.feed(raw):
          events.append(event)
          _report(event)
    for event in decoder.flush():
      events.append(event)
      _report(event)

  memo = reconstruct_text(events)
  print(f"\nReceived {len(memo)} characters.", file=sys.stderr)
  return 0 if any(isinstance(event, DoneEvent) for event in events) else 1


if __name__ == "__main__":
  sys.exit(asyncio.run(main()))
