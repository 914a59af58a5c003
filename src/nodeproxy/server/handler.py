"""Relay handler: hijack the client connection and splice it to a backend.

Per request the handler checks the routed node against the instance
registry, points a copy of the request at the backend, dials it (plain
or TLS), takes over the client socket, writes the request and then copies
bytes both ways until either direction stops. Once the client socket has
been taken over no HTTP response can be sent; failures past that point
are only logged.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Mapping

import structlog
from aiohttp import hdrs, web

from nodeproxy.core.errors import DialError, HijackError, HijackNotSupportedError
from nodeproxy.observability.metrics import (
    ACTIVE_RELAYS,
    BYTES_RELAYED,
    DIAL_DURATION,
    PROXY_REQUESTS,
)
from nodeproxy.registry import Instance, InstanceRegistry
from nodeproxy.routing import (
    Director,
    HostRouter,
    OutboundRequest,
    merge_route_vars,
)
from nodeproxy.server.dial import BackendDialer, Connection, Dialer
from nodeproxy.server.hijack import hijack

logger = structlog.get_logger()

Hijacker = Callable[[web.Request], Connection]

DEFAULT_BUFFER_SIZE = 64 * 1024


def _close(writer: asyncio.StreamWriter) -> None:
    if not writer.is_closing():
        writer.close()


class TCPProxy:
    """aiohttp handler relaying raw bytes between a client and a routed backend.

    The relay ends as soon as one direction finishes, cleanly or not; the
    other direction is cancelled and both sockets are closed.
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        director: Director,
        dialer: Dialer | None = None,
        host_router: HostRouter | None = None,
        hijacker: Hijacker = hijack,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        idle_timeout: float | None = None,
        alias_liveness: bool = False,
    ) -> None:
        self.registry = registry
        self.director = director
        self.dialer = dialer or BackendDialer()
        self.host_router = host_router or HostRouter()
        self.hijacker = hijacker
        self.buffer_size = buffer_size
        self.idle_timeout = idle_timeout or None
        self.alias_liveness = alias_liveness
        self.active_relays = 0

    def route_vars(self, request: web.Request) -> dict[str, str]:
        host_vars = self.host_router.match(request.headers.get(hdrs.HOST, ""))
        return merge_route_vars(request.match_info, host_vars)

    def find_live_instance(self, route_vars: Mapping[str, str]) -> Instance | None:
        """Liveness gate: the routed node must be a registered instance IP.

        An empty node matches nothing. With `alias_liveness`, a request that
        carries no node is checked by its alias and session instead.
        """
        node = route_vars.get("node", "")
        if node:
            return self.registry.find_by_ip(node.replace("-", "."))
        alias = route_vars.get("alias", "")
        if self.alias_liveness and alias:
            return self.registry.find_by_alias(route_vars.get("session", ""), alias)
        return None

    async def __call__(self, request: web.Request) -> web.StreamResponse:
        route_vars = self.route_vars(request)
        if self.find_live_instance(route_vars) is None:
            PROXY_REQUESTS.labels(outcome="no_instance").inc()
            logger.info("No live instance for node", node=route_vars.get("node"), alias=route_vars.get("alias"))
            return web.Response(status=503)

        body = await request.read() if request.can_read_body else b""
        outreq = OutboundRequest.from_request(request, route_vars, body)
        self.director(outreq)

        started = time.monotonic()
        try:
            host, port = outreq.target_address
            backend = await self.dialer(outreq.transport, host, port)
        except (DialError, OSError, ValueError) as e:
            PROXY_REQUESTS.labels(outcome="dial_error").inc()
            logger.error("Error dialing backend", url=outreq.url, error=str(e))
            return web.Response(status=500, text="Error forwarding request.")
        DIAL_DURATION.observe(time.monotonic() - started)

        peer = request.remote
        try:
            client = self.hijacker(request)
        except HijackNotSupportedError as e:
            _close(backend[1])
            PROXY_REQUESTS.labels(outcome="hijack_error").inc()
            logger.error("Hijack not supported", error=str(e))
            return web.Response(status=500, text="Connection does not support hijacking.")
        except HijackError as e:
            _close(backend[1])
            PROXY_REQUESTS.labels(outcome="hijack_error").inc()
            logger.error("Hijack error", error=str(e))
            return web.Response(status=500)

        try:
            await self._relay(outreq, client, backend, peer=peer)
        finally:
            _close(client[1])
            _close(backend[1])

        # aiohttp can no longer write to the hijacked socket; this is discarded.
        return web.Response()

    async def _relay(
        self,
        outreq: OutboundRequest,
        client: Connection,
        backend: Connection,
        peer: str | None = None,
    ) -> None:
        client_reader, client_writer = client
        backend_reader, backend_writer = backend

        try:
            backend_writer.write(outreq.serialize())
            await backend_writer.drain()
        except OSError as e:
            PROXY_REQUESTS.labels(outcome="forward_error").inc()
            logger.error("Error copying request to target", url=outreq.url, error=str(e))
            return

        PROXY_REQUESTS.labels(outcome="relayed").inc()
        logger.info("Relay started", url=outreq.url, peer=peer, transport=outreq.transport.value)

        tasks = [
            asyncio.create_task(self._copy(client_reader, backend_writer, "upstream")),
            asyncio.create_task(self._copy(backend_reader, client_writer, "downstream")),
        ]
        self.active_relays += 1
        ACTIVE_RELAYS.inc()
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self.active_relays -= 1
            ACTIVE_RELAYS.dec()
            logger.info("Relay closed", url=outreq.url, peer=peer)

    async def _copy(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        direction: str,
    ) -> None:
        """Copy bytes from `reader` to `writer` until end-of-stream or error."""
        try:
            while True:
                if self.idle_timeout:
                    data = await asyncio.wait_for(reader.read(self.buffer_size), self.idle_timeout)
                else:
                    data = await reader.read(self.buffer_size)
                if not data:
                    return
                writer.write(data)
                await writer.drain()
                BYTES_RELAYED.labels(direction=direction).inc(len(data))
        except asyncio.TimeoutError:
            logger.info("Relay idle timeout", direction=direction, timeout=self.idle_timeout)
        except OSError as e:
            logger.debug("Relay copy ended", direction=direction, error=str(e))
