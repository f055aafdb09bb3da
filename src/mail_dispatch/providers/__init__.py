# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Outbound email transports.

Each adapter implements the :class:`BaseEmailProvider` contract. Use
:func:`create_provider` to build one from a configuration mapping.
"""

from __future__ import annotations

from typing import Any

from .base import (
    BaseEmailProvider,
    HttpEmailProvider,
    MessageValidationError,
    TransportError,
    is_retryable_status,
)
from .mailchannels import MailChannelsProvider
from .mailgun import MailgunProvider
from .sendgrid import SendGridProvider
from .smtp import SMTPProvider
from .smtp_pool import SMTPPool

PROVIDER_TYPES = ("sendgrid", "mailgun", "mailchannels", "smtp")

__all__ = [
    "BaseEmailProvider",
    "HttpEmailProvider",
    "MailChannelsProvider",
    "MailgunProvider",
    "MessageValidationError",
    "PROVIDER_TYPES",
    "SMTPPool",
    "SMTPProvider",
    "SendGridProvider",
    "TransportError",
    "create_provider",
    "is_retryable_status",
]


def _optional_flag(value: Any) -> bool | None:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def create_provider(provider_type: str, options: dict[str, Any], *, provider_id: str | None = None) -> BaseEmailProvider:
    """Instantiate an adapter from its type name and options.

    Args:
        provider_type: One of ``PROVIDER_TYPES``.
        options: Adapter keyword arguments (``api_key``, ``domain``, ``host`` ...).
        provider_id: Registry id; overrides the adapter's default id.

    Raises:
        ValueError: Unknown type or missing required option.
    """
    match provider_type:
        case "sendgrid":
            if not options.get("api_key"):
                raise ValueError("sendgrid provider requires api_key")
            provider: BaseEmailProvider = SendGridProvider(
                api_key=options["api_key"],
                from_email=options.get("from_email"),
                from_name=options.get("from_name"),
            )
        case "mailgun":
            if not options.get("api_key") or not options.get("domain"):
                raise ValueError("mailgun provider requires api_key and domain")
            provider = MailgunProvider(
                api_key=options["api_key"],
                domain=options["domain"],
                region=options.get("region") or "us",
            )
        case "mailchannels":
            provider = MailChannelsProvider(api_key=options.get("api_key"))
        case "smtp":
            if not options.get("host"):
                raise ValueError("smtp provider requires host")
            provider = SMTPProvider(
                host=options["host"],
                port=int(options.get("port") or 587),
                user=options.get("user"),
                password=options.get("password"),
                use_tls=_optional_flag(options.get("use_tls")),
            )
        case _:
            raise ValueError(f"Unknown provider type: {provider_type!r}")
    if provider_id:
        provider.id = provider_id
    return provider
