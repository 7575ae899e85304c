"""Three-way outcome returned by every external adapter."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, Literal, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Success(Generic[T]):
  """The call produced a usable value."""

  value: T
  kind: Literal["success"] = "success"


@dataclass(frozen=True)
class RetriableError:
  """A transient failure such as a timeout, a 429 or a 5xx."""

  reason: str
  status_code: int | None = None
  kind: Literal["retriable"] = "retriable"


@dataclass(frozen=True)
class FatalError:
  """A failure that no retry can fix."""

  reason: str
  status_code: int | None = None
  kind: Literal["fatal"] = "fatal"


AdapterResult = Union[Success[Any], RetriableError, FatalError]  # noqa: UP007
