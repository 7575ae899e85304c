"""Test configuration: required settings plus the in-memory pipeline fixture."""

from __future__ import annotations

import os
from functools import partial
from pathlib import Path

import pytest

# Ensure required settings are available before importing the app.
os.environ.setdefault("DECKMEMO_ALLOWED_ORIGINS", "http://localhost")
os.environ.setdefault("DECKMEMO_ENV", "test")

from tests.fakes import PipelineFactory, build_pipeline  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
def make_pipeline(tmp_path: Path) -> PipelineFactory:
  return partial(build_pipeline, tmp_path)
