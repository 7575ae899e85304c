"""Caller identity resolution.

Authentication happens at the gateway in front of this service. The gateway verifies the
session and forwards the authenticated user id in ``X-User-Id``; requests without it are
rejected before any pipeline work starts.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Header, HTTPException, status

USER_ID_HEADER = "X-User-Id"


async def get_current_user_id(x_user_id: Annotated[str | None, Header(alias=USER_ID_HEADER)] = None) -> str:
  """Return the authenticated user id forwarded by the gateway."""
  user_id = (x_user_id or "").strip()
  if not user_id:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing authenticated user")
  return user_id
