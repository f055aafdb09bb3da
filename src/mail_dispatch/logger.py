# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the mail dispatch service.

Handlers, level and format are configured once by the entry point (see
:func:`configure_logging`, used by the ASGI server and the CLI). Modules only
ask for a named logger.

Example:
    Typical usage in a module::

        from mail_dispatch.logger import get_logger

        logger = get_logger("EmailQueue")
        logger.info("Email queued: %s", job_id)
"""

import logging
import os

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "MailDispatch") -> logging.Logger:
    """Retrieve a logger bound to ``name``.

    No handlers are attached here; that responsibility lies with the
    application entry point.

    Args:
        name: The logger name. Defaults to "MailDispatch".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger from ``level`` or ``MDS_LOG_LEVEL``.

    Uses ``force=True`` so repeated calls do not stack duplicate handlers.
    """
    level_name = (level or os.getenv("MDS_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        force=True,
    )
