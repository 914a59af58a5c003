"""Outbound backend connections.

A dialer is any coroutine function taking (transport, host, port) and
returning an asyncio (reader, writer) pair. The relay handler receives one
at construction time so tests can substitute their own.
"""

from __future__ import annotations

import asyncio
import ssl
from collections.abc import Awaitable, Callable

import structlog

from nodeproxy.core.errors import DialError
from nodeproxy.routing.target import Transport

logger = structlog.get_logger()

Connection = tuple[asyncio.StreamReader, asyncio.StreamWriter]
Dialer = Callable[[Transport, str, int], Awaitable[Connection]]


def create_backend_ssl_context(verify: bool = False, ca_path: str | None = None) -> ssl.SSLContext:
    """Create the client SSL context used for TLS backends.

    Without `verify`, backend certificates and hostnames are not checked.
    """
    context = ssl.create_default_context(cafile=ca_path)
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


class BackendDialer:
    """Default dialer: plain TCP or TLS over TCP via asyncio.open_connection."""

    def __init__(
        self,
        ssl_context: ssl.SSLContext | None = None,
        connect_timeout: float | None = None,
    ) -> None:
        self._ssl_context = ssl_context or create_backend_ssl_context()
        self._connect_timeout = connect_timeout or None

    async def __call__(self, transport: Transport, host: str, port: int) -> Connection:
        target = f"{host}:{port}"
        if transport is Transport.TLS:
            connect = asyncio.open_connection(
                host, port, ssl=self._ssl_context, server_hostname=host
            )
        else:
            connect = asyncio.open_connection(host, port)

        try:
            return await asyncio.wait_for(connect, timeout=self._connect_timeout)
        except (OSError, ssl.SSLError, asyncio.TimeoutError) as e:
            raise DialError(target, e) from e
