"""Structured payloads exchanged with the language models."""

from __future__ import annotations

import math
from typing import Literal, get_args

from pydantic import BaseModel, ConfigDict, Field, field_validator

Sector = Literal["SaaS", "Fintech", "HealthTech", "E-commerce", "DeepTech", "CleanTech", "EdTech", "Other"]
FundingStage = Literal["Pre-Seed", "Seed", "Series A", "Series B", "Series B+"]


class QuickFacts(BaseModel):
  """Headline facts pulled from a deck before the full memo is written."""

  company_name: str = Field(min_length=1)
  sector: Sector = "Other"
  solution_summary: str = Field(default="", max_length=300)
  funding_stage: FundingStage | None = None
  funding_amount_eur: float | None = Field(default=None, ge=0)
  team_size: int | None = Field(default=None, ge=0)
  model_config = ConfigDict(extra="ignore")

  @field_validator("sector", mode="before")
  @classmethod
  def _unknown_sector_is_other(cls, value: object) -> object:
    # Unknown sectors map to Other.
    if isinstance(value, str) and value not in get_args(Sector):
      return "Other"
    return value

  @field_validator("funding_stage", mode="before")
  @classmethod
  def _unknown_stage_is_none(cls, value: object) -> object:
    if isinstance(value, str) and value not in get_args(FundingStage):
      return None
    return value


class SynthesisRequest(BaseModel):
  """Everything the memo writer needs for one run."""

  deck_text: str = Field(min_length=1)
  quick_facts: QuickFacts | None = None
  notes: str | None = None


_NULL_STRINGS = frozenset({"", "null", "none", "undefined", "n/a"})


def _clean_text(value: object) -> str | None:
  """Non-empty stripped string or None; other types are dropped."""
  if not isinstance(value, str):
    return None
  cleaned = value.strip()
  return None if cleaned.lower() in _NULL_STRINGS else cleaned


def _clean_number(value: object) -> float | None:
  """Number or numeric string as float; null-like strings, NaN and other types become None."""
  if isinstance(value, bool):
    return None
  if isinstance(value, int | float):
    number = float(value)
  elif isinstance(value, str):
    cleaned = value.strip().replace(",", "")
    if cleaned.lower() in _NULL_STRINGS:
      return None
    try:
      number = float(cleaned)
    except ValueError:
      return None
  else:
    return None
  return None if math.isnan(number) or math.isinf(number) else number


class MemoData(BaseModel):
  """Structured deal fields pulled from the finished memo.

  Values the model gets wrong are dropped instead of failing validation, so a partially
  usable reply still yields every field it got right.
  """

  company_name: str | None = None
  sector: str | None = None
  solution_summary: str | None = None
  amount_raised_cents: int | None = None
  pre_money_valuation_cents: int | None = None
  current_arr_cents: int | None = None
  yoy_growth_percent: float | None = None
  mom_growth_percent: float | None = None
  model_config = ConfigDict(extra="ignore")

  @field_validator("company_name", "sector", "solution_summary", mode="before")
  @classmethod
  def _sanitize_text(cls, value: object) -> str | None:
    return _clean_text(value)

  @field_validator("amount_raised_cents", "pre_money_valuation_cents", "current_arr_cents", mode="before")
  @classmethod
  def _sanitize_cents(cls, value: object) -> int | None:
    number = _clean_number(value)
    return None if number is None else round(number)

  @field_validator("yoy_growth_percent", "mom_growth_percent", mode="before")
  @classmethod
  def _sanitize_percent(cls, value: object) -> float | None:
    return _clean_number(value)

  def field_count(self) -> int:
    return sum(1 for value in self.model_dump().values() if value is not None)
