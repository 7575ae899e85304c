"""Prompt builders for the quick facts, memo synthesis and memo data stages."""

from __future__ import annotations

import json

from deckmemo.ai.schemas import MemoData, QuickFacts, SynthesisRequest

QUICK_FACTS_INPUT_CHARS = 10_000
MEMO_DATA_INPUT_CHARS = 30_000

QUICK_FACTS_SYSTEM = "You extract headline facts from startup pitch decks. Reply with one JSON object and nothing else."

SYNTHESIS_SYSTEM = (
  "You are an investment analyst at an early-stage venture fund. Write a structured investment memo in Markdown "
  "with the sections: Summary, Problem, Solution, Market, Business Model, Traction, Team, Competition, Financials, "
  "Risks, Recommendation. Base every claim on the deck and say when information is missing."
)

MEMO_DATA_SYSTEM = "You turn investment memos into structured deal data. Reply with one JSON object and nothing else."


def build_quick_facts_prompt(deck_text: str) -> str:
  """Ask for the headline facts over the first part of the deck."""
  excerpt = deck_text[:QUICK_FACTS_INPUT_CHARS]
  schema = json.dumps(QuickFacts.model_json_schema(), indent=2)
  return f"Extract these fields from the pitch deck below.\n\nJSON schema:\n{schema}\n\nUse null when a number is not stated.\n\nPITCH DECK:\n{excerpt}"


def build_synthesis_prompt(request: SynthesisRequest) -> str:
  """Assemble the memo prompt from the deck text, headline facts and analyst notes."""
  sections = []
  if request.quick_facts is not None:
    sections.append(f"HEADLINE FACTS:\n{request.quick_facts.model_dump_json(indent=2)}")
  if request.notes:
    sections.append(f"ANALYST NOTES:\n{request.notes}")
  sections.append(f"PITCH DECK:\n{request.deck_text}")
  return "\n\n".join(sections)


def build_memo_data_prompt(memo_text: str) -> str:
  """Ask for the structured deal fields stated in the finished memo."""
  schema = json.dumps(MemoData.model_json_schema(), indent=2)
  return (
    "Extract these fields from the investment memo below.\n\n"
    f"JSON schema:\n{schema}\n\n"
    "Money amounts are in euro cents, growth rates in percent. Use null when a value is not stated.\n\n"
    f"MEMO:\n{memo_text[:MEMO_DATA_INPUT_CHARS]}"
  )


def strip_json_fences(text: str) -> str:
  """Remove a surrounding Markdown code fence from a model reply."""
  cleaned = text.strip()
  if cleaned.startswith("```"):
    first_newline = cleaned.find("\n")
    cleaned = cleaned[first_newline + 1 :] if first_newline != -1 else cleaned[3:]
    if cleaned.rstrip().endswith("```"):
      cleaned = cleaned.rstrip()[:-3]
  return cleaned.strip()
