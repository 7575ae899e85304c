"""Blob storage for uploaded decks."""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import Protocol

from starlette.concurrency import run_in_threadpool

from deckmemo.core.exceptions import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class DocumentStore(Protocol):
  """Byte storage keyed by relative paths."""

  async def get(self, path: str) -> bytes:
    """Return the stored bytes; raises NotFoundError when missing."""

  async def put(self, path: str, data: bytes) -> str:
    """Store bytes at ``path`` and return the path to read them back."""


class LocalDocumentStore:
  """Filesystem-backed document store rooted at a single directory."""

  def __init__(self, root: str | Path) -> None:
    self._root = Path(root).resolve()

  @property
  def root(self) -> Path:
    return self._root

  def _resolve(self, path: str) -> Path:
    # Reject absolute paths and parent traversal so reads stay under the root.
    relative = PurePosixPath(path)
    if not path or relative.is_absolute() or ".." in relative.parts:
      raise ValidationError(f"Invalid storage path: {path!r}")
    return self._root.joinpath(*relative.parts)

  async def get(self, path: str) -> bytes:
    target = self._resolve(path)
    try:
      return await run_in_threadpool(target.read_bytes)
    except FileNotFoundError as exc:
      raise NotFoundError(f"Stored document not found: {path}") from exc

  async def put(self, path: str, data: bytes) -> str:
    target = self._resolve(path)

    def _write() -> None:
      target.parent.mkdir(parents=True, exist_ok=True)
      target.write_bytes(data)

    await run_in_threadpool(_write)
    logger.info("Stored document path=%s bytes=%d", path, len(data))
    return path
