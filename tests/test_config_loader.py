"""Tests for settings and provider loading from config.ini and the environment."""

import pytest

from mail_dispatch.config_loader import (
    DispatchSettings,
    ProviderDefinition,
    build_registry,
    env_provider_definitions,
    load_settings,
)
from mail_dispatch.providers import MailgunProvider, SendGridProvider, SMTPProvider


def write_config(tmp_path, text):
    path = tmp_path / "config.ini"
    path.write_text(text)
    return str(path)


def test_defaults_from_empty_file(tmp_path):
    settings = load_settings(write_config(tmp_path, ""), env={})

    assert settings.host == "0.0.0.0"
    assert settings.port == 8000
    assert settings.api_token is None
    assert settings.interval == 5.0
    assert settings.max_concurrent == 10
    assert settings.max_retries == 3
    assert settings.retention_hours == 24.0
    assert settings.health_check_interval == 300.0
    assert settings.start_active is True
    assert [p.id for p in settings.providers] == ["mailchannels"]


def test_file_values_and_env_precedence(tmp_path):
    path = write_config(
        tmp_path,
        """
[server]
host = 127.0.0.1
port = 9000
api_token = from-file

[queue]
interval = 2.5
max_concurrent = 4

[scheduler]
start_active = false
""",
    )

    settings = load_settings(path, env={"MDS_PORT": "9999", "MDS_MAX_RETRIES": "5", "MDS_API_TOKEN": ""})

    assert settings.host == "127.0.0.1"
    assert settings.port == 9999
    assert settings.api_token == "from-file"
    assert settings.interval == 2.5
    assert settings.max_concurrent == 4
    assert settings.max_retries == 5
    assert settings.start_active is False


def test_config_path_from_env(tmp_path):
    path = write_config(tmp_path, "[server]\nport = 8123\n")

    assert load_settings(env={"MDS_CONFIG": path}).port == 8123


def test_explicit_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_settings(str(tmp_path / "nope.ini"), env={})


def test_invalid_numbers_fall_back_to_defaults(tmp_path):
    path = write_config(tmp_path, "[queue]\nmax_concurrent = many\ninterval = soon\n")

    settings = load_settings(path, env={})

    assert settings.max_concurrent == 10
    assert settings.interval == 5.0


def test_provider_sections(tmp_path):
    path = write_config(
        tmp_path,
        """
[provider:office]
type = smtp
name = Office relay
priority = 3
daily_limit = 2000
active = no
host = smtp.example.com
port = 465
user = mailer
password = secret

[provider:mailchannels]
type = mailchannels
priority = 5
""",
    )

    settings = load_settings(path, env={"SENDGRID_API_KEY": "SG.key"})

    by_id = {p.id: p for p in settings.providers}
    office = by_id["office"]
    assert office.type == "smtp"
    assert office.name == "Office relay"
    assert office.priority == 3
    assert office.daily_limit == 2000
    assert office.active is False
    assert office.options == {"host": "smtp.example.com", "port": "465", "user": "mailer", "password": "secret"}
    assert by_id["mailchannels"].priority == 5
    assert by_id["sendgrid"].daily_limit == 100000
    assert [p.id for p in settings.providers] == ["office", "mailchannels", "sendgrid"]


def test_provider_section_with_bad_type(tmp_path):
    path = write_config(tmp_path, "[provider:weird]\ntype = fax\n")

    with pytest.raises(ValueError, match="weird"):
        load_settings(path, env={})


def test_env_provider_definitions():
    definitions = env_provider_definitions(
        {
            "SENDGRID_API_KEY": "SG.key",
            "SENDGRID_FROM_EMAIL": "noreply@example.com",
            "MAILGUN_API_KEY": "key-1",
            "MAILGUN_DOMAIN": "mg.example.com",
            "MAILGUN_REGION": "eu",
        }
    )

    by_id = {d.id: d for d in definitions}
    assert (by_id["mailchannels"].priority, by_id["mailchannels"].daily_limit) == (1, 5000)
    assert (by_id["sendgrid"].priority, by_id["sendgrid"].daily_limit) == (1, 100000)
    assert (by_id["mailgun"].priority, by_id["mailgun"].daily_limit) == (2, 10000)
    assert by_id["sendgrid"].options["from_email"] == "noreply@example.com"
    assert by_id["mailgun"].options["region"] == "eu"


def test_mailgun_requires_domain():
    ids = [d.id for d in env_provider_definitions({"MAILGUN_API_KEY": "key-1"})]
    assert ids == ["mailchannels"]


def test_build_registry_creates_adapters_and_skips_invalid():
    settings = DispatchSettings(
        providers=[
            ProviderDefinition(id="sg", type="sendgrid", name="SendGrid", priority=1, options={"api_key": "SG.k"}),
            ProviderDefinition(
                id="mg",
                type="mailgun",
                name="Mailgun",
                priority=2,
                daily_limit=10,
                options={"api_key": "k", "domain": "mg.example.com"},
            ),
            ProviderDefinition(id="relay", type="smtp", name="Relay", active=False, options={"host": "smtp.local", "password": "pw"}),
            ProviderDefinition(id="broken", type="sendgrid", name="Broken", options={}),
        ]
    )

    registry = build_registry(settings)

    assert list(registry.providers) == ["sg", "mg", "relay"]
    assert isinstance(registry.get_provider("sg"), SendGridProvider)
    assert isinstance(registry.get_provider("mg"), MailgunProvider)
    assert isinstance(registry.get_provider("relay"), SMTPProvider)
    assert registry.get_provider("relay").id == "relay"
    assert registry.get_provider("relay").name == "Relay"
    assert registry.get_config("mg").daily_limit == 10
    assert registry.get_config("relay").is_active is False
    assert "password" not in registry.get_config("relay").config
    assert registry.get_config("sg").type == "sendgrid"
