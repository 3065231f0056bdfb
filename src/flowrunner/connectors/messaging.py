"""Messaging connector: email over SMTP, Slack Web API, an SMS gateway and webhooks."""

from __future__ import annotations

import asyncio
import logging
import smtplib
import uuid
from email.mime.text import MIMEText
from typing import TYPE_CHECKING

import httpx

from ..automation.errors import ActionError
from .base import BaseConnector
from .http import decode_body
from .registry import register

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)

_SLACK_API = "https://slack.com/api"


@register
class MessagingConnector(BaseConnector):
    """Delivers ``messaging`` operations.

    Channels: ``email`` (SMTP_HOST, SMTP_USERNAME, SMTP_PASSWORD, SMTP_FROM),
    ``slack`` (SLACK_BOT_TOKEN, scope chat:write), ``sms`` (SMS_GATEWAY_URL,
    SMS_API_KEY) and ``webhook`` (no settings; the operation carries the URL).
    """

    kind = "messaging"

    @classmethod
    def is_configured(cls, settings: Settings) -> bool:
        return bool(settings.smtp_host or settings.slack_bot_token or settings.sms_gateway_url)

    async def send(
        self,
        channel: str,
        recipient: str | None = None,
        subject: str | None = None,
        message: str | None = None,
        webhook_url: str | None = None,
    ) -> dict:
        if channel == "email":
            result = await self._send_email(recipient, subject, message)
        elif channel == "slack":
            result = await self._send_slack(recipient, message)
        elif channel == "sms":
            result = await self._send_sms(recipient, message)
        elif channel == "webhook":
            result = await self._send_webhook(webhook_url, recipient, subject, message)
        else:
            self._fail(f"Unknown messaging channel: {channel}", "invalid_channel")
        logger.info("Sent %s message to %s", channel, recipient or webhook_url)
        return {"channel": channel, "recipient": recipient, "status": "sent", **result}

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    async def _send_email(self, recipient: str | None, subject: str | None, body: str | None) -> dict:
        s = self.settings
        if not s.smtp_host:
            self._fail("Email delivery is not configured (SMTP_HOST)", "not_configured")
        if not recipient:
            self._fail("Email needs a recipient", "invalid_config")

        msg = MIMEText(body or "", "plain")
        msg["From"] = s.smtp_from or s.smtp_username or ""
        msg["To"] = recipient
        msg["Subject"] = subject or ""
        message_id = f"<{uuid.uuid4().hex}@flowrunner>"
        msg["Message-ID"] = message_id

        def deliver() -> None:
            with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=s.http_timeout) as server:
                if s.smtp_use_tls:
                    server.starttls()
                if s.smtp_username and s.smtp_password:
                    server.login(s.smtp_username, s.smtp_password)
                server.send_message(msg)

        try:
            await asyncio.to_thread(deliver)
        except (smtplib.SMTPException, OSError) as e:
            raise ActionError(f"Email to {recipient} failed: {e}", "smtp_error") from e
        return {"message_id": message_id}

    async def _send_slack(self, channel: str | None, text: str | None) -> dict:
        token = self.settings.slack_bot_token
        if not token:
            self._fail("Slack is not configured (SLACK_BOT_TOKEN)", "not_configured")
        if not channel:
            self._fail("Slack message needs a channel", "invalid_config")

        try:
            resp = await self.http.post(
                f"{_SLACK_API}/chat.postMessage",
                headers={"Authorization": f"Bearer {token}"},
                json={"channel": channel, "text": text or ""},
            )
        except httpx.HTTPError as e:
            raise ActionError(f"Slack request failed: {e}", "network_error") from e
        data = resp.json()
        if not data.get("ok"):
            self._fail(f"Slack API error: {data.get('error', 'unknown')}", "slack_error")
        return {"message_id": data.get("ts"), "channel_id": data.get("channel")}

    async def _send_sms(self, recipient: str | None, text: str | None) -> dict:
        s = self.settings
        if not s.sms_gateway_url:
            self._fail("SMS is not configured (SMS_GATEWAY_URL)", "not_configured")
        if not recipient:
            self._fail("SMS needs a recipient", "invalid_config")

        headers = {"Authorization": f"Bearer {s.sms_api_key}"} if s.sms_api_key else {}
        try:
            resp = await self.http.post(
                s.sms_gateway_url, headers=headers, json={"to": recipient, "message": text or ""}
            )
        except httpx.HTTPError as e:
            raise ActionError(f"SMS gateway request failed: {e}", "network_error") from e
        if resp.status_code >= 400:
            self._fail(f"SMS gateway returned {resp.status_code}", "sms_error")
        body = decode_body(resp)
        message_id = body.get("id") if isinstance(body, dict) else None
        return {"message_id": message_id}

    async def _send_webhook(
        self, url: str | None, recipient: str | None, subject: str | None, text: str | None
    ) -> dict:
        if not url:
            self._fail("Webhook message needs a URL", "invalid_config")
        payload = {"recipient": recipient, "subject": subject, "message": text}
        try:
            resp = await self.http.post(url, json=payload)
        except httpx.HTTPError as e:
            raise ActionError(f"Webhook {url} failed: {e}", "network_error") from e
        if resp.status_code >= 400:
            self._fail(f"Webhook {url} returned {resp.status_code}", "webhook_error")
        return {"status_code": resp.status_code, "response": decode_body(resp)}
