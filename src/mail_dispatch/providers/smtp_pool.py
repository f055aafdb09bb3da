# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Lightweight asyncio-friendly SMTP connection pool.

Connections are grouped by their connection parameters. A sender borrows an
idle connection for the duration of one message through :meth:`connection`
and hands it back afterwards, so concurrent sends in the same dispatch tick
never share a socket while consecutive ticks reuse warm connections.

The pool handles:
- TTL-based connection expiration
- Health checking via SMTP NOOP before reuse
- Discarding connections that failed while borrowed
- Periodic cleanup of idle, expired connections

Example:
    Sending through the pool::

        pool = SMTPPool(ttl=300)
        async with pool.connection("smtp.example.com", 587, "user", "secret", use_tls=True) as smtp:
            await smtp.send_message(message)

        await pool.cleanup()
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import aiosmtplib

ConnectionKey = tuple[str, int, str | None, str | None, bool]


class SMTPPool:
    """Pool of idle SMTP connections keyed by connection parameters.

    Attributes:
        ttl: Maximum idle age in seconds before a connection is discarded.
        idle: Mapping of connection parameters to (connection, last used) pairs.
        lock: Asyncio lock guarding ``idle``.
    """

    def __init__(self, ttl: int = 300, connect_timeout: float = 15.0):
        """Initialize the pool.

        Args:
            ttl: Seconds an idle connection stays reusable. Defaults to 300.
            connect_timeout: Upper bound for connect plus login.
        """
        self.ttl = ttl
        self.connect_timeout = connect_timeout
        self.idle: dict[ConnectionKey, list[tuple[aiosmtplib.SMTP, float]]] = {}
        self.lock = asyncio.Lock()

    async def _connect(self, host: str, port: int, user: str | None, password: str | None, use_tls: bool) -> aiosmtplib.SMTP:
        """Open and authenticate a new SMTP connection.

        TLS behavior based on port and use_tls flag:
        - Port 465 with use_tls=True: Direct TLS (implicit TLS)
        - Other ports with use_tls=True: STARTTLS
        - use_tls=False: Plain SMTP

        Raises:
            asyncio.TimeoutError: If connect and login exceed ``connect_timeout``.
            aiosmtplib.SMTPException: If connection or authentication fails.
        """
        if use_tls and port == 465:
            smtp = aiosmtplib.SMTP(hostname=host, port=port, start_tls=False, use_tls=True, timeout=10.0)
        elif use_tls:
            smtp = aiosmtplib.SMTP(hostname=host, port=port, start_tls=True, use_tls=False, timeout=10.0)
        else:
            smtp = aiosmtplib.SMTP(hostname=host, port=port, start_tls=False, use_tls=False, timeout=10.0)

        async def _do_connect():
            await smtp.connect()
            if user and password:
                await smtp.login(user, password)

        await asyncio.wait_for(_do_connect(), timeout=self.connect_timeout)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return True if the connection answers NOOP with 250 within 5 seconds."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            return False

    @staticmethod
    async def _close(smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            smtp.close()

    async def acquire(self, host: str, port: int, user: str | None, password: str | None, *, use_tls: bool) -> aiosmtplib.SMTP:
        """Borrow a live idle connection or open a new one."""
        key: ConnectionKey = (host, port, user, password, use_tls)
        while True:
            async with self.lock:
                bucket = self.idle.get(key) or []
                entry = bucket.pop() if bucket else None
            if entry is None:
                break
            smtp, last_used = entry
            if (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                return smtp
            await self._close(smtp)
        return await self._connect(host, port, user, password, use_tls)

    async def release(self, smtp: aiosmtplib.SMTP, key: ConnectionKey) -> None:
        """Return a healthy connection to the idle set."""
        async with self.lock:
            self.idle.setdefault(key, []).append((smtp, time.time()))

    @asynccontextmanager
    async def connection(
        self, host: str, port: int, user: str | None, password: str | None, *, use_tls: bool
    ) -> AsyncIterator[aiosmtplib.SMTP]:
        """Borrow a connection for one send.

        The connection goes back to the pool only when the block exits
        cleanly; on error it is closed.
        """
        smtp = await self.acquire(host, port, user, password, use_tls=use_tls)
        try:
            yield smtp
        except BaseException:
            await self._close(smtp)
            raise
        await self.release(smtp, (host, port, user, password, use_tls))

    async def cleanup(self) -> None:
        """Close idle connections that are past their TTL or no longer answer."""
        now = time.time()
        async with self.lock:
            items = [(key, entry) for key, bucket in self.idle.items() for entry in bucket]
            self.idle = {}

        keep: list[tuple[ConnectionKey, tuple[aiosmtplib.SMTP, float]]] = []
        for key, (smtp, last_used) in items:
            if (now - last_used) <= self.ttl and await self._is_alive(smtp):
                keep.append((key, (smtp, last_used)))
            else:
                await self._close(smtp)

        async with self.lock:
            for key, entry in keep:
                self.idle.setdefault(key, []).append(entry)

    async def close_all(self) -> None:
        """Close every idle connection."""
        async with self.lock:
            items = [smtp for bucket in self.idle.values() for smtp, _ in bucket]
            self.idle = {}
        for smtp in items:
            await self._close(smtp)
