# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SMTP transport adapter built on ``aiosmtplib`` and :class:`SMTPPool`."""

from __future__ import annotations

import asyncio
import base64
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any

import aiosmtplib

from ..models import EmailPayload, ProviderLimits
from .base import BaseEmailProvider, TransportError
from .smtp_pool import SMTPPool


def _is_temporary_code(code: int | None) -> bool:
    """SMTP 4xx replies are transient; 5xx are permanent."""
    return code is None or 400 <= code < 500


def build_email_message(payload: EmailPayload) -> EmailMessage:
    """Build an :class:`EmailMessage` from a validated payload.

    Text and HTML bodies become a ``multipart/alternative``; attachments are
    decoded from base64 and appended.
    """
    msg = EmailMessage()
    msg["From"] = formataddr((payload.from_name, payload.from_addr)) if payload.from_name else payload.from_addr
    msg["To"] = ", ".join(payload.to)
    if payload.cc:
        msg["Cc"] = ", ".join(payload.cc)
    msg["Subject"] = payload.subject
    domain = payload.from_addr.rsplit("@", 1)[-1] if payload.from_addr else None
    msg["Message-ID"] = make_msgid(domain=domain)
    if payload.tags:
        msg["X-Tags"] = ", ".join(payload.tags)

    if payload.text and payload.html:
        msg.set_content(payload.text)
        msg.add_alternative(payload.html, subtype="html")
    elif payload.html:
        msg.set_content(payload.html, subtype="html")
    else:
        msg.set_content(payload.text or "")

    for att in payload.attachments or []:
        maintype, _, subtype = att.content_type.partition("/")
        msg.add_attachment(
            base64.b64decode(att.content),
            maintype=maintype or "application",
            subtype=subtype or "octet-stream",
            filename=att.filename,
            disposition=att.disposition,
            cid=f"<{att.content_id}>" if att.content_id else None,
        )
    return msg


class SMTPProvider(BaseEmailProvider):
    """Direct SMTP delivery through a pooled ``aiosmtplib`` connection."""

    id = "smtp"
    name = "SMTP"

    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        user: str | None = None,
        password: str | None = None,
        use_tls: bool | None = None,
        send_timeout: float = 30.0,
        pool: SMTPPool | None = None,
        provider_id: str | None = None,
    ):
        super().__init__()
        if provider_id:
            self.id = provider_id
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.use_tls = self.port == 465 if use_tls is None else bool(use_tls)
        self.send_timeout = send_timeout
        self.pool = pool or SMTPPool()
        self.name = f"SMTP ({host}:{self.port})"

    async def _transmit(self, payload: EmailPayload) -> tuple[str | None, dict[str, Any]]:
        msg = build_email_message(payload)
        recipients = [*payload.to, *(payload.cc or []), *(payload.bcc or [])]
        try:
            async with self.pool.connection(
                self.host, self.port, self.user, self.password, use_tls=self.use_tls
            ) as smtp:
                await asyncio.wait_for(
                    smtp.send_message(msg, sender=payload.from_addr, recipients=recipients),
                    timeout=self.send_timeout,
                )
        except aiosmtplib.SMTPRecipientsRefused as exc:
            codes = [refusal.code for refusal in exc.recipients]
            raise TransportError(
                "SMTP_RECIPIENTS_REFUSED",
                str(exc),
                retryable=all(_is_temporary_code(code) for code in codes),
                status=codes[0] if codes else None,
            ) from exc
        except aiosmtplib.SMTPResponseException as exc:
            raise TransportError(
                f"SMTP_{exc.code}",
                exc.message,
                retryable=_is_temporary_code(exc.code),
                status=exc.code,
            ) from exc
        return msg["Message-ID"], {"host": self.host}

    async def verify(self) -> bool:
        """Open (or reuse) a pooled connection; NOOP must answer 250."""
        async with self.pool.connection(self.host, self.port, self.user, self.password, use_tls=self.use_tls) as smtp:
            code, _ = await smtp.noop()
        return code == 250

    def get_limits(self) -> ProviderLimits:
        return ProviderLimits(
            daily_limit=10000,
            hourly_limit=1000,
            per_second_limit=10,
            max_recipients=100,
            max_attachment_size=25 * 1024 * 1024,
            max_email_size=50 * 1024 * 1024,
        )
