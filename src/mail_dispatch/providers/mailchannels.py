# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""MailChannels transactional API adapter."""

from __future__ import annotations

from typing import Any

from ..models import EmailPayload, ProviderLimits
from .base import HttpEmailProvider

MAILCHANNELS_API_URL = "https://api.mailchannels.net/tx/v1/send"


class MailChannelsProvider(HttpEmailProvider):
    """Deliver through the MailChannels JSON API (no credentials required)."""

    id = "mailchannels"
    name = "MailChannels"

    def __init__(self, *, api_url: str = MAILCHANNELS_API_URL, api_key: str | None = None, timeout: float = 30.0):
        super().__init__(timeout=timeout)
        self.api_url = api_url
        self.api_key = api_key

    def build_body(self, payload: EmailPayload) -> dict[str, Any]:
        personalization: dict[str, Any] = {"to": [{"email": addr} for addr in payload.to]}
        if payload.cc:
            personalization["cc"] = [{"email": addr} for addr in payload.cc]
        if payload.bcc:
            personalization["bcc"] = [{"email": addr} for addr in payload.bcc]
        sender: dict[str, Any] = {"email": payload.from_addr}
        if payload.from_name:
            sender["name"] = payload.from_name
        content = []
        if payload.text:
            content.append({"type": "text/plain", "value": payload.text})
        if payload.html:
            content.append({"type": "text/html", "value": payload.html})
        return {
            "personalizations": [personalization],
            "from": sender,
            "subject": payload.subject,
            "content": content,
        }

    async def _transmit(self, payload: EmailPayload) -> tuple[str | None, dict[str, Any]]:
        headers = {"content-type": "application/json"}
        if self.api_key:
            headers["X-Api-Key"] = self.api_key
        reply = await self._request("POST", self.api_url, json=self.build_body(payload), headers=headers)
        self._raise_for_reply(reply, f"MailChannels error: {reply.status} {reply.text}".strip())
        return reply.headers.get("X-Message-Id"), {"status_code": reply.status}

    async def verify(self) -> bool:
        # No verification endpoint; reachability is proven by sends.
        return True

    def get_limits(self) -> ProviderLimits:
        return ProviderLimits(
            daily_limit=5000,
            hourly_limit=500,
            per_second_limit=25,
            max_recipients=100,
            max_attachment_size=10 * 1024 * 1024,
            max_email_size=25 * 1024 * 1024,
        )
