"""Queued, multi-provider email delivery service.

This package provides an asynchronous email dispatcher with features including:

- Priority-ordered in-memory job queue with base-3 retry backoff
- Pluggable outbound providers (SendGrid, Mailgun, MailChannels, SMTP)
- Priority and health based provider selection with one-step failover
- Daily send limits and periodic provider health checks
- Prometheus metrics for monitoring
- FastAPI REST API for submission and control

Example:
    Basic usage with the FastAPI application::

        from mail_dispatch.config_loader import build_registry, load_settings
        from mail_dispatch.core import MailDispatchCore
        from mail_dispatch.api import create_app

        core = MailDispatchCore(registry=build_registry(load_settings()))
        app = create_app(core, api_token="secret")

Authors:
    Softwell S.r.l.
"""
