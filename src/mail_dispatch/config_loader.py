# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for the dispatcher and its outbound providers.

Settings come from an optional INI file and from ``MDS_*`` environment
variables; environment values win. Providers are declared in
``[provider:<id>]`` sections or through the well-known provider variables
(``SENDGRID_API_KEY``, ``MAILGUN_API_KEY`` ...).

Example:
    Configuration file format (config.ini)::

        [server]
        host = 0.0.0.0
        port = 8000
        api_token = change-me

        [queue]
        interval = 5
        max_concurrent = 10
        max_retries = 3
        retention_hours = 24

        [scheduler]
        health_check_interval = 300
        start_active = true

        [provider:sendgrid]
        type = sendgrid
        priority = 1
        daily_limit = 100000
        api_key = SG.xxxx
        from_email = noreply@example.com

        [provider:office]
        type = smtp
        priority = 3
        host = smtp.example.com
        port = 587
        user = mailer
        password = secret

    Building the runtime objects::

        settings = load_settings("/etc/mail-dispatch/config.ini")
        registry = build_registry(settings)
"""

from __future__ import annotations

import configparser
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from mail_dispatch.logger import get_logger
from mail_dispatch.models import ProviderConfig
from mail_dispatch.providers import PROVIDER_TYPES, create_provider
from mail_dispatch.registry import ProviderRegistry

DEFAULT_CONFIG_PATH = "config.ini"
PROVIDER_SECTION_PREFIX = "provider:"
_TRUE_VALUES = {"1", "true", "yes", "on"}
_PROVIDER_META_KEYS = {"type", "name", "priority", "daily_limit", "active"}

logger = get_logger("ConfigLoader")


@dataclass
class ProviderDefinition:
    """Declarative description of one outbound provider.

    Attributes:
        id: Registry id.
        type: Adapter type, one of ``PROVIDER_TYPES``.
        name: Display name.
        priority: Selection priority, lower is preferred.
        daily_limit: Daily send ceiling, ``None`` for unlimited.
        active: Inactive providers are registered but never selected.
        options: Adapter-specific options (credentials, host, region ...).
    """

    id: str
    type: str
    name: str
    priority: int = 1
    daily_limit: int | None = None
    active: bool = True
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class DispatchSettings:
    """Runtime settings of the dispatcher process."""

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    api_token: str | None = None

    # Queue
    interval: float = 5.0
    max_concurrent: int = 10
    max_retries: int = 3
    retention_hours: float = 24.0

    # Scheduler
    health_check_interval: float = 300.0
    start_active: bool = True

    providers: list[ProviderDefinition] = field(default_factory=list)


def _as_bool(value: str | bool | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return value.strip().lower() in _TRUE_VALUES


def _as_int(value: str | None, default: int | None) -> int | None:
    if value is None or str(value).strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Invalid integer %r, using default %s", value, default)
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None or str(value).strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Invalid number %r, using default %s", value, default)
        return default


def parse_provider_sections(config: configparser.ConfigParser) -> list[ProviderDefinition]:
    """Read every ``[provider:<id>]`` section into a :class:`ProviderDefinition`.

    Raises:
        ValueError: If a section has no ``type`` or an unknown one.
    """
    definitions = []
    for section in config.sections():
        if not section.startswith(PROVIDER_SECTION_PREFIX):
            continue
        provider_id = section[len(PROVIDER_SECTION_PREFIX):].strip()
        values = dict(config.items(section))
        provider_type = (values.get("type") or "").strip().lower()
        if provider_type not in PROVIDER_TYPES:
            raise ValueError(f"Provider '{provider_id}' has invalid type {provider_type!r}")
        definitions.append(
            ProviderDefinition(
                id=provider_id,
                type=provider_type,
                name=values.get("name") or provider_id,
                priority=_as_int(values.get("priority"), 1),
                daily_limit=_as_int(values.get("daily_limit"), None),
                active=_as_bool(values.get("active"), True),
                options={k: v for k, v in values.items() if k not in _PROVIDER_META_KEYS},
            )
        )
    return definitions


def env_provider_definitions(env: Mapping[str, str]) -> list[ProviderDefinition]:
    """Providers implied by well-known environment variables.

    MailChannels needs no credentials and is always present. SendGrid needs
    ``SENDGRID_API_KEY``; Mailgun needs ``MAILGUN_API_KEY`` and ``MAILGUN_DOMAIN``.
    """
    definitions = [
        ProviderDefinition(
            id="mailchannels",
            type="mailchannels",
            name="MailChannels",
            priority=1,
            daily_limit=5000,
            options={"api_key": env.get("MAILCHANNELS_API_KEY")},
        )
    ]
    if env.get("SENDGRID_API_KEY"):
        definitions.append(
            ProviderDefinition(
                id="sendgrid",
                type="sendgrid",
                name="SendGrid",
                priority=1,
                daily_limit=100000,
                options={
                    "api_key": env["SENDGRID_API_KEY"],
                    "from_email": env.get("SENDGRID_FROM_EMAIL"),
                    "from_name": env.get("SENDGRID_FROM_NAME"),
                },
            )
        )
    if env.get("MAILGUN_API_KEY") and env.get("MAILGUN_DOMAIN"):
        definitions.append(
            ProviderDefinition(
                id="mailgun",
                type="mailgun",
                name="Mailgun",
                priority=2,
                daily_limit=10000,
                options={
                    "api_key": env["MAILGUN_API_KEY"],
                    "domain": env["MAILGUN_DOMAIN"],
                    "region": env.get("MAILGUN_REGION") or "us",
                },
            )
        )
    return definitions


def load_settings(config_path: str | None = None, env: Mapping[str, str] | None = None) -> DispatchSettings:
    """Load settings from the INI file and the environment.

    Args:
        config_path: INI file path. Defaults to ``MDS_CONFIG`` or
            ``config.ini``; the default file is optional.
        env: Environment mapping, ``os.environ`` when omitted.

    Returns:
        DispatchSettings with file values overridden by environment values.

    Raises:
        FileNotFoundError: If an explicitly given config file does not exist.
        ValueError: If a provider section is invalid.
    """
    env = os.environ if env is None else env
    explicit = config_path or env.get("MDS_CONFIG")
    path = Path(explicit or DEFAULT_CONFIG_PATH)

    config = configparser.ConfigParser()
    if path.exists():
        config.read(path)
        logger.info("Loaded configuration from %s", path)
    elif explicit:
        raise FileNotFoundError(f"Config file not found: {path}")

    def get(section: str, key: str, env_key: str) -> str | None:
        value = env.get(env_key)
        if value not in (None, ""):
            return value
        return config.get(section, key, fallback=None)

    defaults = DispatchSettings()
    settings = DispatchSettings(
        host=get("server", "host", "MDS_HOST") or defaults.host,
        port=_as_int(get("server", "port", "MDS_PORT"), defaults.port),
        api_token=get("server", "api_token", "MDS_API_TOKEN") or None,
        interval=_as_float(get("queue", "interval", "MDS_QUEUE_INTERVAL"), defaults.interval),
        max_concurrent=_as_int(get("queue", "max_concurrent", "MDS_MAX_CONCURRENT"), defaults.max_concurrent),
        max_retries=_as_int(get("queue", "max_retries", "MDS_MAX_RETRIES"), defaults.max_retries),
        retention_hours=_as_float(get("queue", "retention_hours", "MDS_RETENTION_HOURS"), defaults.retention_hours),
        health_check_interval=_as_float(
            get("scheduler", "health_check_interval", "MDS_HEALTH_CHECK_INTERVAL"),
            defaults.health_check_interval,
        ),
        start_active=_as_bool(get("scheduler", "start_active", "MDS_START_ACTIVE"), defaults.start_active),
    )

    providers = parse_provider_sections(config)
    declared = {definition.id for definition in providers}
    providers.extend(d for d in env_provider_definitions(env) if d.id not in declared)
    settings.providers = providers
    return settings


def build_registry(settings: DispatchSettings, *, user_provider_resolver=None) -> ProviderRegistry:
    """Create a registry populated with every configured provider.

    Providers that fail to initialize are logged and skipped.
    """
    registry = ProviderRegistry(user_provider_resolver=user_provider_resolver)
    for definition in settings.providers:
        try:
            provider = create_provider(definition.type, definition.options, provider_id=definition.id)
        except ValueError as exc:
            logger.warning("Skipping provider %s: %s", definition.id, exc)
            continue
        provider.name = definition.name
        registry.add_provider(
            provider,
            ProviderConfig(
                id=definition.id,
                name=definition.name,
                type=definition.type,
                is_active=definition.active,
                priority=definition.priority,
                config={k: v for k, v in definition.options.items() if k not in {"api_key", "password"}},
                daily_limit=definition.daily_limit,
            ),
        )
    return registry
