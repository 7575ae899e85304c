"""Mistral OCR extraction client over httpx."""

from __future__ import annotations

import base64
import logging
from typing import Any

import httpx

from deckmemo.ai.classify import classify_exception, classify_status
from deckmemo.ai.results import AdapterResult, FatalError, Success

logger = logging.getLogger(__name__)

PAGE_SEPARATOR = "\n\n---\n\n"


class MistralOcrClient:
  """Send a PDF to the Mistral OCR endpoint and join page markdown."""

  def __init__(self, *, api_key: str | None, base_url: str = "https://api.mistral.ai", model: str = "mistral-ocr-latest", client: httpx.AsyncClient | None = None) -> None:
    self._api_key = api_key
    self._url = f"{base_url.rstrip('/')}/v1/ocr"
    self._model = model
    self._client = client

  def _build_payload(self, payload: bytes) -> dict[str, Any]:
    encoded = base64.b64encode(payload).decode("ascii")
    return {"model": self._model, "document": {"type": "document_url", "document_url": f"data:application/pdf;base64,{encoded}"}, "include_image_base64": False}

  async def _post(self, client: httpx.AsyncClient, body: dict[str, Any], timeout: float) -> httpx.Response:
    headers = {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json", "Accept": "application/json"}
    return await client.post(self._url, json=body, headers=headers, timeout=timeout)

  async def invoke(self, payload: bytes, timeout: float) -> AdapterResult:
    """Return Success(text) with pages joined by a horizontal rule."""
    if not self._api_key:
      return FatalError(reason="OCR API key is not configured")
    if not payload:
      return FatalError(reason="Document is empty")

    body = self._build_payload(payload)
    try:
      if self._client is not None:
        response = await self._post(self._client, body, timeout)
      else:
        async with httpx.AsyncClient(trust_env=False) as client:
          response = await self._post(client, body, timeout)
    except httpx.HTTPError as exc:
      logger.warning("OCR request failed error_type=%s error=%s", type(exc).__name__, exc)
      return classify_exception(exc)

    if response.status_code >= 400:
      logger.warning("OCR request returned status=%s body=%s", response.status_code, response.text[:500])
      return classify_status(response.status_code, response.reason_phrase)

    try:
      data = response.json()
      pages = data["pages"]
      text = PAGE_SEPARATOR.join(str(page.get("markdown") or "") for page in pages)
    except (ValueError, KeyError, TypeError, AttributeError) as exc:
      return FatalError(reason=f"Malformed OCR response: {exc}")

    if not text.strip():
      return FatalError(reason="OCR returned no text")

    logger.info("OCR extracted pages=%d chars=%d", len(pages), len(text))
    return Success(text)
