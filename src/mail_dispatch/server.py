# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module provides a pre-configured FastAPI application built from
:func:`mail_dispatch.config_loader.load_settings`.

Usage:
    uvicorn mail_dispatch.server:app --host 0.0.0.0 --port 8000

Environment variables:
    MDS_CONFIG: Path to the INI configuration file (default: config.ini)
    MDS_LOG_LEVEL: Logging level (default: INFO)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config_loader import DispatchSettings, build_registry, load_settings
from .core import MailDispatchCore
from .logger import configure_logging


def build_core(settings: DispatchSettings) -> MailDispatchCore:
    """Create the dispatcher core described by ``settings``."""
    return MailDispatchCore(
        registry=build_registry(settings),
        interval=settings.interval,
        max_concurrent=settings.max_concurrent,
        max_retries=settings.max_retries,
        retention_hours=settings.retention_hours,
        health_check_interval=settings.health_check_interval,
        start_active=settings.start_active,
    )


def build_app(settings: DispatchSettings) -> FastAPI:
    """Create an application whose lifespan starts and stops its own core."""
    core = build_core(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler - starts and stops the core service."""
        await core.start()
        yield
        await core.stop()

    return create_app(core, api_token=settings.api_token, lifespan=lifespan)


configure_logging()
_settings = load_settings()

# Create the configured application
app = build_app(_settings)
