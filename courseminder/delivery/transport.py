from __future__ import annotations

import asyncio
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage as MimeMessage
from typing import Any, Protocol

import httpx

from courseminder.config import Settings, settings as default_settings
from courseminder.errors import DeliveryError
from courseminder.log import get_logger

logger = get_logger("delivery.transport")


@dataclass(frozen=True)
class OutboundEmail:
  to_address: str
  to_name: str | None
  subject: str
  text: str
  html: str | None = None


class EmailTransport(Protocol):
  name: str

  async def send(self, msg: OutboundEmail) -> dict[str, Any]: ...


class LocalTransport:
  """Accepts everything and only logs it. Used in development and tests."""

  name = "local"

  def __init__(self) -> None:
    self.sent: list[OutboundEmail] = []

  async def send(self, msg: OutboundEmail) -> dict[str, Any]:
    self.sent.append(msg)
    logger.info(f"[local email] to={msg.to_address} subject={msg.subject!r}")
    return {"provider": "local", "status": "sent"}


class SmtpTransport:
  name = "smtp"

  def __init__(self, *, host: str, port: int, username: str | None, password: str | None, from_addr: str, starttls: bool = True):
    self.host = host
    self.port = port
    self.username = username
    self.password = password
    self.from_addr = from_addr
    self.starttls = starttls

  async def send(self, msg: OutboundEmail) -> dict[str, Any]:
    if not self.host or not self.from_addr:
      raise DeliveryError("SMTP transport missing host/from", permanent=True)

    def _send_sync() -> None:
      m = MimeMessage()
      m["Subject"] = msg.subject
      m["From"] = self.from_addr
      m["To"] = f"{msg.to_name} <{msg.to_address}>" if msg.to_name else msg.to_address
      m.set_content(msg.text)
      if msg.html:
        m.add_alternative(msg.html, subtype="html")
      with smtplib.SMTP(host=self.host, port=self.port, timeout=15) as s:
        s.ehlo()
        if self.starttls:
          s.starttls()
          s.ehlo()
        if self.username and self.password:
          s.login(self.username, self.password)
        s.send_message(m)

    try:
      await asyncio.to_thread(_send_sync)
    except smtplib.SMTPRecipientsRefused as e:
      raise DeliveryError(f"SMTP recipient refused: {e}", permanent=True) from e
    except (smtplib.SMTPException, OSError) as e:
      raise DeliveryError(f"SMTP send failed: {e}") from e
    return {"provider": "smtp", "status": "sent"}


class ResendTransport:
  name = "resend"

  def __init__(self, *, api_key: str, from_addr: str, base_url: str = "https://api.resend.com", client: httpx.AsyncClient | None = None):
    self.api_key = api_key
    self.from_addr = from_addr
    self.base_url = base_url.rstrip("/")
    self._client = client

  async def send(self, msg: OutboundEmail) -> dict[str, Any]:
    if not self.api_key:
      raise DeliveryError("Resend transport missing API key", permanent=True)
    payload: dict[str, Any] = {"from": self.from_addr, "to": [msg.to_address], "subject": msg.subject, "text": msg.text}
    if msg.html:
      payload["html"] = msg.html
    headers = {"Authorization": f"Bearer {self.api_key}"}

    client = self._client or httpx.AsyncClient(timeout=15)
    try:
      r = await client.post(f"{self.base_url}/emails", json=payload, headers=headers)
    except httpx.HTTPError as e:
      raise DeliveryError(f"Resend request failed: {e}") from e
    finally:
      if self._client is None:
        await client.aclose()
    if r.status_code >= 400:
      # 4xx other than rate limiting will not get better on retry.
      permanent = 400 <= r.status_code < 500 and r.status_code != 429
      raise DeliveryError(f"Resend API error {r.status_code}: {r.text[:300]}", permanent=permanent)
    data = r.json() if r.content else {}
    return {"provider": "resend", "status": "sent", "id": data.get("id")}


def transport_for(cfg: Settings | None = None) -> EmailTransport:
  cfg = cfg or default_settings
  kind = (cfg.email_transport or "local").strip().lower()
  if kind == "smtp":
    return SmtpTransport(
      host=cfg.smtp_host or "",
      port=int(cfg.smtp_port),
      username=cfg.smtp_username,
      password=cfg.smtp_password,
      from_addr=cfg.email_from,
      starttls=cfg.smtp_starttls,
    )
  if kind == "resend":
    return ResendTransport(api_key=cfg.resend_api_key or "", from_addr=cfg.email_from, base_url=cfg.resend_base_url)
  if kind == "local":
    return LocalTransport()
  raise ValueError(f"Unsupported email transport: {kind}")
