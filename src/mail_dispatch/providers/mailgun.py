# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Mailgun messages API adapter."""

from __future__ import annotations

import base64
import time
from typing import Any

import aiohttp

from ..models import EmailPayload, ProviderLimits
from .base import HttpEmailProvider

MAILGUN_BASE_URLS = {
    "us": "https://api.mailgun.net/v3",
    "eu": "https://api.eu.mailgun.net/v3",
}


class MailgunProvider(HttpEmailProvider):
    """Deliver through Mailgun's form-encoded messages endpoint."""

    id = "mailgun"
    name = "Mailgun"

    def __init__(self, *, api_key: str, domain: str, region: str = "us", timeout: float = 30.0):
        super().__init__(timeout=timeout)
        if region not in MAILGUN_BASE_URLS:
            raise ValueError(f"Unknown Mailgun region: {region!r}")
        self.api_key = api_key
        self.domain = domain
        self.region = region
        self.base_url = MAILGUN_BASE_URLS[region]

    @property
    def _auth(self) -> aiohttp.BasicAuth:
        return aiohttp.BasicAuth("api", self.api_key)

    def build_form(self, payload: EmailPayload) -> aiohttp.FormData:
        """Translate a payload into Mailgun form fields."""
        form = aiohttp.FormData()
        sender = f"{payload.from_name} <{payload.from_addr}>" if payload.from_name else payload.from_addr
        form.add_field("from", sender)
        for addr in payload.to:
            form.add_field("to", addr)
        for addr in payload.cc or []:
            form.add_field("cc", addr)
        for addr in payload.bcc or []:
            form.add_field("bcc", addr)
        form.add_field("subject", payload.subject)
        if payload.html:
            form.add_field("html", payload.html)
        if payload.text:
            form.add_field("text", payload.text)
        if payload.track_opens:
            form.add_field("o:tracking-opens", "true")
        if payload.track_clicks:
            form.add_field("o:tracking-clicks", "true")
        for tag in payload.tags or []:
            form.add_field("o:tag", tag)
        for key, value in payload.metadata.items():
            form.add_field(f"v:{key}", str(value))
        for att in payload.attachments or []:
            field = "inline" if att.disposition == "inline" else "attachment"
            form.add_field(
                field,
                base64.b64decode(att.content),
                filename=att.filename,
                content_type=att.content_type,
            )
        return form

    async def _transmit(self, payload: EmailPayload) -> tuple[str | None, dict[str, Any]]:
        url = f"{self.base_url}/{self.domain}/messages"
        reply = await self._request("POST", url, data=self.build_form(payload), auth=self._auth)
        data = reply.json()
        self._raise_for_reply(reply, str(data.get("message") or f"HTTP {reply.status}"))
        message_id = data.get("id") or f"mailgun-{int(time.time() * 1000)}"
        return message_id, {"status_code": reply.status, "message": data.get("message")}

    async def verify(self) -> bool:
        """Fetch the sending domain; a 2xx means the key and domain are valid."""
        reply = await self._request("GET", f"{self.base_url}/{self.domain}", auth=self._auth)
        return reply.ok

    def get_limits(self) -> ProviderLimits:
        return ProviderLimits(
            daily_limit=10000,
            hourly_limit=1000,
            per_second_limit=10,
            max_recipients=1000,
            max_attachment_size=25 * 1024 * 1024,
            max_email_size=25 * 1024 * 1024,
        )
