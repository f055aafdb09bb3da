# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SendGrid v3 Mail Send adapter."""

from __future__ import annotations

import time
from typing import Any

from ..models import EmailPayload, ProviderLimits
from .base import HttpEmailProvider, HttpReply

SENDGRID_API_URL = "https://api.sendgrid.com/v3/mail/send"


class SendGridProvider(HttpEmailProvider):
    """Deliver through the SendGrid JSON API."""

    id = "sendgrid"
    name = "SendGrid"

    def __init__(
        self,
        *,
        api_key: str,
        from_email: str | None = None,
        from_name: str | None = None,
        api_url: str = SENDGRID_API_URL,
        timeout: float = 30.0,
    ):
        super().__init__(timeout=timeout)
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.api_url = api_url

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def build_body(self, payload: EmailPayload) -> dict[str, Any]:
        """Translate a payload into the SendGrid request document."""
        personalization: dict[str, Any] = {
            "to": [{"email": addr} for addr in payload.to],
            "subject": payload.subject,
            "custom_args": {key: str(value) for key, value in payload.metadata.items()},
        }
        if payload.cc:
            personalization["cc"] = [{"email": addr} for addr in payload.cc]
        if payload.bcc:
            personalization["bcc"] = [{"email": addr} for addr in payload.bcc]

        sender: dict[str, Any] = {"email": payload.from_addr}
        if payload.from_name or self.from_name:
            sender["name"] = payload.from_name or self.from_name

        content = []
        if payload.text:
            content.append({"type": "text/plain", "value": payload.text})
        if payload.html:
            content.append({"type": "text/html", "value": payload.html})

        body: dict[str, Any] = {
            "personalizations": [personalization],
            "from": sender,
            "content": content,
            "tracking_settings": {
                "click_tracking": {"enable": bool(payload.track_clicks)},
                "open_tracking": {"enable": bool(payload.track_opens)},
            },
            "categories": list(payload.tags or []),
        }
        if payload.attachments:
            body["attachments"] = [
                {
                    "filename": att.filename,
                    "content": att.content,
                    "type": att.content_type,
                    "disposition": att.disposition,
                    **({"content_id": att.content_id} if att.content_id else {}),
                }
                for att in payload.attachments
            ]
        return body

    @staticmethod
    def extract_error_message(reply: HttpReply) -> str:
        data = reply.json()
        errors = data.get("errors")
        if isinstance(errors, list) and errors:
            return ", ".join(str(err.get("message", err)) if isinstance(err, dict) else str(err) for err in errors)
        if data.get("message"):
            return str(data["message"])
        return reply.text or f"HTTP {reply.status}"

    async def _transmit(self, payload: EmailPayload) -> tuple[str | None, dict[str, Any]]:
        reply = await self._request("POST", self.api_url, json=self.build_body(payload), headers=self._headers)
        self._raise_for_reply(reply, self.extract_error_message(reply))
        message_id = reply.headers.get("X-Message-Id") or f"sendgrid-{int(time.time() * 1000)}"
        return message_id, {"status_code": reply.status}

    async def verify(self) -> bool:
        """Post a sandbox-mode message; SendGrid validates it without sending."""
        body = {
            "personalizations": [{"to": [{"email": "test@example.com"}], "subject": "Test"}],
            "from": {"email": self.from_email or "test@example.com"},
            "content": [{"type": "text/plain", "value": "Test"}],
            "mail_settings": {"sandbox_mode": {"enable": True}},
        }
        reply = await self._request("POST", self.api_url, json=body, headers=self._headers)
        return reply.ok

    def get_limits(self) -> ProviderLimits:
        return ProviderLimits(
            daily_limit=100000,
            hourly_limit=10000,
            per_second_limit=100,
            max_recipients=1000,
            max_attachment_size=30 * 1024 * 1024,
            max_email_size=30 * 1024 * 1024,
        )
