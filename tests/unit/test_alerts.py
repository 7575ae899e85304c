from __future__ import annotations

import json
import logging
from typing import Any

import httpx
import pytest

from deckmemo.notifications.alerts import FailureAlert, LogAlertSender, MailerSendAlertSender, MailerSendConfig

_ALERT = FailureAlert(job_id="job-1", job_key="deal-1", error_message="Text extraction failed: HTTP 400", step="extraction", occurred_at="2026-01-01T00:00:00.000Z")
_CONFIG = MailerSendConfig(api_key="ms-key", from_address="alerts@example.test", to_address="ops@example.test", timeout_seconds=5, base_url="https://mail.example.test/v1")


@pytest.mark.anyio
async def test_mailersend_posts_a_plain_text_email() -> None:
  seen: dict[str, Any] = {}

  def handler(request: httpx.Request) -> httpx.Response:
    seen["url"] = str(request.url)
    seen["auth"] = request.headers["authorization"]
    seen["body"] = json.loads(request.content)
    return httpx.Response(202, headers={"x-message-id": "msg-1"})

  sender = MailerSendAlertSender(config=_CONFIG, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
  await sender.send(_ALERT)

  assert seen["url"] == "https://mail.example.test/v1/email"
  assert seen["auth"] == "Bearer ms-key"
  assert seen["body"]["to"] == [{"email": "ops@example.test"}]
  assert seen["body"]["subject"] == "[deckmemo] Analysis failed for deal-1"
  assert "Step: extraction" in seen["body"]["text"]
  assert seen["body"]["text"].endswith("Text extraction failed: HTTP 400")


@pytest.mark.anyio
async def test_mailersend_errors_are_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
  sender = MailerSendAlertSender(config=_CONFIG, client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500, text="down"))))

  with caplog.at_level(logging.ERROR, logger="deckmemo.notifications.alerts"):
    await sender.send(_ALERT)

  assert "MailerSend alert request failed" in caplog.text


@pytest.mark.anyio
async def test_log_sender_writes_a_warning(caplog: pytest.LogCaptureFixture) -> None:
  with caplog.at_level(logging.WARNING, logger="deckmemo.notifications.alerts"):
    await LogAlertSender().send(_ALERT)

  assert "job_key=deal-1" in caplog.text
