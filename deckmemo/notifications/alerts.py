"""Operator alerts for failed analyses.

MailerSend is used via its HTTP API. Alert delivery problems are logged and never change
the outcome of a run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from deckmemo.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FailureAlert:
  """What an operator needs to triage a failed run."""

  job_id: str
  job_key: str
  error_message: str
  step: str | None
  occurred_at: str

  @property
  def subject(self) -> str:
    return f"[deckmemo] Analysis failed for {self.job_key}"

  def text(self) -> str:
    return "\n".join([f"Job: {self.job_id}", f"Job key: {self.job_key}", f"Step: {self.step or 'unknown'}", f"Time: {self.occurred_at}", "", self.error_message])


class AlertSender(Protocol):
  async def send(self, alert: FailureAlert) -> None:
    """Deliver an alert; implementations must not raise."""


@dataclass(frozen=True)
class MailerSendConfig:
  """MailerSend configuration needed to send alert emails."""

  api_key: str
  from_address: str
  to_address: str
  timeout_seconds: float
  base_url: str = "https://api.mailersend.com/v1"


class MailerSendAlertSender:
  """Send failure alerts as plain-text emails through MailerSend."""

  def __init__(self, *, config: MailerSendConfig, client: httpx.AsyncClient | None = None) -> None:
    self._config = config
    self._client = client

  async def _post(self, client: httpx.AsyncClient, payload: dict[str, object]) -> httpx.Response:
    headers = {"Authorization": f"Bearer {self._config.api_key}", "Content-Type": "application/json", "Accept": "application/json"}
    return await client.post(f"{self._config.base_url}/email", json=payload, headers=headers, timeout=self._config.timeout_seconds)

  async def send(self, alert: FailureAlert) -> None:
    payload: dict[str, object] = {"from": {"email": self._config.from_address}, "to": [{"email": self._config.to_address}], "subject": alert.subject, "text": alert.text()}
    try:
      if self._client is not None:
        response = await self._post(self._client, payload)
      else:
        async with httpx.AsyncClient(trust_env=False) as client:
          response = await self._post(client, payload)
      response.raise_for_status()
    except httpx.HTTPStatusError as exc:
      logger.error("MailerSend alert request failed job_id=%s status=%s body=%s", alert.job_id, exc.response.status_code, exc.response.text[:500])
      return
    except httpx.HTTPError as exc:
      logger.error("MailerSend alert request failed job_id=%s error=%s", alert.job_id, exc)
      return
    logger.info("Failure alert sent job_id=%s message_id=%s", alert.job_id, response.headers.get("x-message-id"))


class LogAlertSender:
  """Alert sender used when email alerts are disabled."""

  async def send(self, alert: FailureAlert) -> None:
    logger.warning("Analysis failure job_id=%s job_key=%s step=%s error=%s", alert.job_id, alert.job_key, alert.step, alert.error_message)


def build_alert_sender(settings: Settings) -> AlertSender:
  """Select the alert sender for the configured environment."""
  if not settings.alerts_enabled:
    return LogAlertSender()
  # Settings validation guarantees these are present when alerts are enabled.
  config = MailerSendConfig(api_key=settings.mailersend_api_key or "", from_address=settings.alert_from_address or "", to_address=settings.alert_to_address or "", timeout_seconds=settings.mailersend_timeout_seconds, base_url=settings.mailersend_base_url)
  return MailerSendAlertSender(config=config)
