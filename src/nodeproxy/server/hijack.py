"""Take over the client connection behind an aiohttp request.

After hijacking, aiohttp no longer reads from or writes to the socket: the
transport is re-attached to an asyncio StreamReaderProtocol and the caller
owns the returned (reader, writer) pair. aiohttp's request handler loses
its transport reference, so whatever response the web handler returns
afterwards is dropped, and the connection is unregistered from aiohttp once
the caller closes the socket.
"""

from __future__ import annotations

import asyncio
from typing import Any

from aiohttp import web

from nodeproxy.core.errors import HijackError, HijackNotSupportedError
from nodeproxy.server.dial import Connection


class _HijackedProtocol(asyncio.StreamReaderProtocol):
    """Stream protocol that hands connection loss back to aiohttp's handler."""

    def __init__(self, reader: asyncio.StreamReader, origin: Any, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__(reader, loop=loop)
        self._origin = origin
        self._loop = loop

    def connection_lost(self, exc: Exception | None) -> None:
        super().connection_lost(exc)
        # aiohttp only unregisters the connection from its server on connection_lost.
        if self._origin is not None:
            self._loop.call_soon(self._origin.connection_lost, exc)
            self._origin = None


def can_hijack(request: web.Request) -> bool:
    transport = request.transport
    return (
        transport is not None
        and not transport.is_closing()
        and hasattr(transport, "set_protocol")
        and request.protocol is not None
    )


def hijack(request: web.Request, limit: int = 2**16) -> Connection:
    """Detach the request's socket from aiohttp and return it as streams.

    Raises:
        HijackNotSupportedError: the request has no live transport to take over.
        HijackError: the handoff itself failed.
    """
    if not can_hijack(request):
        raise HijackNotSupportedError("Connection does not support hijacking")

    transport = request.transport
    origin = request.protocol
    loop = asyncio.get_running_loop()

    try:
        # Detach aiohttp without closing the socket. With no transport on its
        # protocol, the response written after the handler returns fails as a
        # client disconnect and aiohttp stops serving the connection.
        origin.keep_alive(False)
        origin.transport = None
        reader = asyncio.StreamReader(limit=limit, loop=loop)
        protocol = _HijackedProtocol(reader, origin, loop)
        transport.set_protocol(protocol)
        protocol.connection_made(transport)
        if not transport.is_reading():
            transport.resume_reading()
        writer = asyncio.StreamWriter(transport, protocol, reader, loop)
    except (AttributeError, RuntimeError, OSError) as e:
        transport.close()
        raise HijackError(str(e)) from e

    return reader, writer
