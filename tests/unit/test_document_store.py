from __future__ import annotations

from pathlib import Path

import pytest

from deckmemo.core.exceptions import NotFoundError, ValidationError
from deckmemo.storage.documents import LocalDocumentStore


@pytest.mark.anyio
async def test_put_then_get_under_the_root(tmp_path: Path) -> None:
  store = LocalDocumentStore(tmp_path)

  path = await store.put("user-1/doc-1.pdf", b"%PDF-1.4")

  assert path == "user-1/doc-1.pdf"
  assert (tmp_path / "user-1" / "doc-1.pdf").read_bytes() == b"%PDF-1.4"
  assert await store.get(path) == b"%PDF-1.4"


@pytest.mark.anyio
@pytest.mark.parametrize("path", ["", "/etc/passwd", "../outside.pdf", "user-1/../../outside.pdf"])
async def test_paths_outside_the_root_are_rejected(tmp_path: Path, path: str) -> None:
  store = LocalDocumentStore(tmp_path)

  with pytest.raises(ValidationError):
    await store.get(path)


@pytest.mark.anyio
async def test_missing_files_are_not_found(tmp_path: Path) -> None:
  with pytest.raises(NotFoundError):
    await LocalDocumentStore(tmp_path).get("user-1/missing.pdf")
