"""Tests for the relay handler.

The first group drives the handler through aiohttp's test client with fake
dialers and hijackers; the second runs full relays over real sockets
against small asyncio backends.
"""

from __future__ import annotations

import asyncio
import ssl
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from nodeproxy.core.errors import DialError, HijackError, HijackNotSupportedError
from nodeproxy.registry import Instance, MemoryInstanceRegistry
from nodeproxy.routing import Transport, make_director
from nodeproxy.server.handler import TCPProxy


def make_app(proxy: TCPProxy) -> web.Application:
    app = web.Application()
    app.router.add_route("*", "/{path:.*}", proxy)
    return app


def make_proxy(registry: MemoryInstanceRegistry, **kwargs) -> TCPProxy:
    return TCPProxy(registry=registry, director=make_director(registry, "80"), **kwargs)


def fake_backend_writer() -> MagicMock:
    writer = MagicMock()
    writer.is_closing.return_value = False
    return writer


class Backend:
    """Asyncio TCP backend that records the forwarded request.

    After the request it sends `reply`; with `echo_once` it echoes one chunk
    and closes, otherwise it echoes until the proxy closes the connection.
    """

    def __init__(self, reply: bytes, echo_once: bool = False, ssl_context: ssl.SSLContext | None = None):
        self.reply = reply
        self.echo_once = echo_once
        self.ssl_context = ssl_context
        self.requests: asyncio.Queue[tuple[bytes, bytes]] = asyncio.Queue()
        self.peer_closed = asyncio.Event()
        self.server: asyncio.Server | None = None
        self.port = 0

    async def start(self) -> None:
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0, ssl=self.ssl_context)
        self.port = self.server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        if self.server:
            self.server.close()
            await self.server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            head = await reader.readuntil(b"\r\n\r\n")
            length = 0
            for line in head.split(b"\r\n"):
                name, _, value = line.partition(b":")
                if name.strip().lower() == b"content-length":
                    length = int(value.strip())
            body = await reader.readexactly(length) if length else b""
            self.requests.put_nowait((head, body))

            writer.write(self.reply)
            await writer.drain()

            while True:
                data = await reader.read(1024)
                if not data:
                    self.peer_closed.set()
                    break
                writer.write(data)
                await writer.drain()
                if self.echo_once:
                    break
        except (asyncio.IncompleteReadError, ConnectionError, ssl.SSLError):
            self.peer_closed.set()
        finally:
            writer.close()


@pytest_asyncio.fixture
async def backend_factory():
    backends: list[Backend] = []

    async def factory(reply: bytes, echo_once: bool = False, ssl_context: ssl.SSLContext | None = None) -> Backend:
        backend = Backend(reply, echo_once=echo_once, ssl_context=ssl_context)
        await backend.start()
        backends.append(backend)
        return backend

    yield factory
    for backend in backends:
        await backend.stop()


def local_registry() -> MemoryInstanceRegistry:
    return MemoryInstanceRegistry([Instance(ip="127.0.0.1", session_id="a1b2c3d4e5", alias="web")])


class TestPreHijack:
    """Outcomes decided before the client connection is taken over."""

    @pytest.mark.asyncio
    async def test_unrouted_host_returns_503(self):
        dialer = AsyncMock()
        proxy = make_proxy(local_registry(), dialer=dialer)
        async with TestClient(TestServer(make_app(proxy))) as client:
            resp = await client.get("/", headers={"Host": "www.example.com"})
            assert resp.status == 503
        dialer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_node_returns_503_without_dialing(self):
        dialer = AsyncMock()
        hijacker = MagicMock()
        proxy = make_proxy(MemoryInstanceRegistry(), dialer=dialer, hijacker=hijacker)
        async with TestClient(TestServer(make_app(proxy))) as client:
            resp = await client.get("/", headers={"Host": "ip10-0-0-5-8080.example.com"})
            assert resp.status == 503
        dialer.assert_not_awaited()
        hijacker.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_alias_returns_503(self):
        dialer = AsyncMock()
        proxy = make_proxy(local_registry(), dialer=dialer, alias_liveness=True)
        async with TestClient(TestServer(make_app(proxy))) as client:
            resp = await client.get("/", headers={"Host": "db-a1b2c3d4-8080.example.com"})
            assert resp.status == 503
        dialer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dial_failure_returns_500_without_hijack(self):
        dialer = AsyncMock(side_effect=DialError("10.0.0.5:8080", ConnectionRefusedError()))
        hijacker = MagicMock()
        registry = MemoryInstanceRegistry([Instance(ip="10.0.0.5")])
        proxy = make_proxy(registry, dialer=dialer, hijacker=hijacker)
        async with TestClient(TestServer(make_app(proxy))) as client:
            resp = await client.get("/", headers={"Host": "ip10-0-0-5-8080.example.com"})
            assert resp.status == 500
            assert await resp.text() == "Error forwarding request."
        dialer.assert_awaited_once_with(Transport.PLAIN, "10.0.0.5", 8080)
        hijacker.assert_not_called()

    @pytest.mark.asyncio
    async def test_port_443_dials_tls(self):
        dialer = AsyncMock(side_effect=DialError("10.0.0.5:443", OSError("handshake failed")))
        registry = MemoryInstanceRegistry([Instance(ip="10.0.0.5")])
        proxy = make_proxy(registry, dialer=dialer)
        async with TestClient(TestServer(make_app(proxy))) as client:
            resp = await client.get("/", headers={"Host": "ip10-0-0-5-443.example.com"})
            assert resp.status == 500
        dialer.assert_awaited_once_with(Transport.TLS, "10.0.0.5", 443)

    @pytest.mark.asyncio
    async def test_alias_host_without_node_returns_503(self):
        """Liveness is checked by node IP; an alias host carries no node."""
        dialer = AsyncMock()
        proxy = make_proxy(local_registry(), dialer=dialer)
        async with TestClient(TestServer(make_app(proxy))) as client:
            resp = await client.get("/", headers={"Host": "web-a1b2c3d4-3000.example.com"})
            assert resp.status == 503
        dialer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_alias_liveness_dials_instance_ip(self):
        dialer = AsyncMock(side_effect=DialError("127.0.0.1:3000", ConnectionRefusedError()))
        proxy = make_proxy(local_registry(), dialer=dialer, alias_liveness=True)
        async with TestClient(TestServer(make_app(proxy))) as client:
            resp = await client.get("/", headers={"Host": "web-a1b2c3d4-3000.example.com"})
            assert resp.status == 500
        dialer.assert_awaited_once_with(Transport.PLAIN, "127.0.0.1", 3000)

    @pytest.mark.asyncio
    async def test_hijack_unsupported_returns_500_and_closes_backend(self):
        backend_writer = fake_backend_writer()
        dialer = AsyncMock(return_value=(MagicMock(), backend_writer))
        hijacker = MagicMock(side_effect=HijackNotSupportedError("no transport"))
        proxy = make_proxy(local_registry(), dialer=dialer, hijacker=hijacker)
        async with TestClient(TestServer(make_app(proxy))) as client:
            resp = await client.get("/", headers={"Host": "ip127-0-0-1-8080.example.com"})
            assert resp.status == 500
        hijacker.assert_called_once()
        backend_writer.close.assert_called_once()
        backend_writer.write.assert_not_called()

    @pytest.mark.asyncio
    async def test_hijack_error_closes_backend(self):
        backend_writer = fake_backend_writer()
        dialer = AsyncMock(return_value=(MagicMock(), backend_writer))
        hijacker = MagicMock(side_effect=HijackError("handoff failed"))
        proxy = make_proxy(local_registry(), dialer=dialer, hijacker=hijacker)
        async with TestClient(TestServer(make_app(proxy))) as client:
            resp = await client.get("/", headers={"Host": "ip127-0-0-1-8080.example.com"})
            assert resp.status == 500
        backend_writer.close.assert_called_once()


class TestRelay:
    """Full relays over real sockets."""

    @pytest.mark.asyncio
    async def test_upgrade_relays_both_directions(self, backend_factory):
        backend = await backend_factory(
            b"HTTP/1.1 101 Switching Protocols\r\nUpgrade: websocket\r\nConnection: Upgrade\r\n\r\n",
            echo_once=True,
        )
        proxy = make_proxy(local_registry())

        async with TestServer(make_app(proxy)) as server:
            reader, writer = await asyncio.open_connection(server.host, server.port)
            host = f"ip127-0-0-1-{backend.port}.example.com"
            writer.write(
                f"GET /chat?room=1 HTTP/1.1\r\nHost: {host}\r\n"
                "Upgrade: websocket\r\nConnection: Upgrade\r\n\r\n".encode()
            )
            await writer.drain()

            head, body = await asyncio.wait_for(backend.requests.get(), 5)
            assert head.startswith(b"GET /chat?room=1 HTTP/1.1\r\n")
            assert f"Host: {host}\r\n".encode() in head
            assert b"Upgrade: websocket\r\n" in head
            assert body == b""

            status = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), 5)
            assert status.startswith(b"HTTP/1.1 101 Switching Protocols")

            frame = b"\x81\x04ping"
            writer.write(frame)
            await writer.drain()
            assert await asyncio.wait_for(reader.readexactly(len(frame)), 5) == frame

            # The backend closes after one echo; the client socket follows.
            assert await asyncio.wait_for(reader.read(), 5) == b""
            writer.close()

        assert proxy.active_relays == 0

    @pytest.mark.asyncio
    async def test_plain_request_gets_backend_response(self, backend_factory):
        backend = await backend_factory(
            b"HTTP/1.1 200 OK\r\nContent-Length: 5\r\nConnection: close\r\n\r\nhello",
            echo_once=True,
        )
        proxy = make_proxy(local_registry())

        async with TestServer(make_app(proxy)) as server:
            reader, writer = await asyncio.open_connection(server.host, server.port)
            writer.write(
                f"GET /hello HTTP/1.1\r\nHost: ip127-0-0-1-{backend.port}.example.com\r\n\r\n".encode()
            )
            await writer.drain()

            response = await asyncio.wait_for(reader.readuntil(b"hello"), 5)
            assert response.startswith(b"HTTP/1.1 200 OK")
            writer.close()

    @pytest.mark.asyncio
    async def test_request_body_is_forwarded(self, backend_factory):
        backend = await backend_factory(b"HTTP/1.1 204 No Content\r\n\r\n", echo_once=True)
        proxy = make_proxy(local_registry())

        async with TestServer(make_app(proxy)) as server:
            reader, writer = await asyncio.open_connection(server.host, server.port)
            writer.write(
                f"POST /submit HTTP/1.1\r\nHost: ip127-0-0-1-{backend.port}.example.com\r\n"
                "Content-Length: 11\r\n\r\nhello world".encode()
            )
            await writer.drain()

            head, body = await asyncio.wait_for(backend.requests.get(), 5)
            assert head.startswith(b"POST /submit HTTP/1.1\r\n")
            assert body == b"hello world"
            writer.close()

    @pytest.mark.asyncio
    async def test_chunked_body_is_forwarded_with_length(self, backend_factory):
        backend = await backend_factory(b"HTTP/1.1 204 No Content\r\n\r\n", echo_once=True)
        proxy = make_proxy(local_registry())

        async with TestServer(make_app(proxy)) as server:
            reader, writer = await asyncio.open_connection(server.host, server.port)
            writer.write(
                f"POST /submit HTTP/1.1\r\nHost: ip127-0-0-1-{backend.port}.example.com\r\n"
                "Transfer-Encoding: chunked\r\n\r\n5\r\nhello\r\n0\r\n\r\n".encode()
            )
            await writer.drain()

            head, body = await asyncio.wait_for(backend.requests.get(), 5)
            assert b"Transfer-Encoding" not in head
            assert b"Content-Length: 5\r\n" in head
            assert body == b"hello"
            writer.close()

    @pytest.mark.asyncio
    async def test_client_close_ends_relay(self, backend_factory):
        backend = await backend_factory(b"HTTP/1.1 101 Switching Protocols\r\n\r\n")
        proxy = make_proxy(local_registry())

        async with TestServer(make_app(proxy)) as server:
            reader, writer = await asyncio.open_connection(server.host, server.port)
            writer.write(
                f"GET / HTTP/1.1\r\nHost: ip127-0-0-1-{backend.port}.example.com\r\n"
                "Upgrade: websocket\r\nConnection: Upgrade\r\n\r\n".encode()
            )
            await writer.drain()
            await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), 5)

            writer.close()
            await asyncio.wait_for(backend.peer_closed.wait(), 5)

        assert proxy.active_relays == 0

    @pytest.mark.asyncio
    async def test_idle_timeout_ends_relay(self, backend_factory):
        backend = await backend_factory(b"HTTP/1.1 101 Switching Protocols\r\n\r\n")
        proxy = make_proxy(local_registry(), idle_timeout=0.2)

        async with TestServer(make_app(proxy)) as server:
            reader, writer = await asyncio.open_connection(server.host, server.port)
            writer.write(
                f"GET / HTTP/1.1\r\nHost: ip127-0-0-1-{backend.port}.example.com\r\n"
                "Upgrade: websocket\r\nConnection: Upgrade\r\n\r\n".encode()
            )
            await writer.drain()
            await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), 5)

            assert await asyncio.wait_for(reader.read(), 5) == b""
            await asyncio.wait_for(backend.peer_closed.wait(), 5)
            writer.close()

    @pytest.mark.asyncio
    async def test_refused_backend_returns_500(self, unused_tcp_port):
        proxy = make_proxy(local_registry())
        async with TestClient(TestServer(make_app(proxy))) as client:
            resp = await client.get(
                "/", headers={"Host": f"ip127-0-0-1-{unused_tcp_port}.example.com"}
            )
            assert resp.status == 500
            assert await resp.text() == "Error forwarding request."

    @pytest.mark.asyncio
    async def test_connection_released_after_relay(self, backend_factory):
        backend = await backend_factory(b"HTTP/1.1 101 Switching Protocols\r\n\r\n", echo_once=True)
        proxy = make_proxy(local_registry())

        async with TestServer(make_app(proxy)) as server:
            reader, writer = await asyncio.open_connection(server.host, server.port)
            writer.write(
                f"GET / HTTP/1.1\r\nHost: ip127-0-0-1-{backend.port}.example.com\r\n"
                "Upgrade: websocket\r\nConnection: Upgrade\r\n\r\n".encode()
            )
            await writer.drain()
            await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), 5)
            writer.write(b"bye")
            await writer.drain()
            assert await asyncio.wait_for(reader.readexactly(3), 5) == b"bye"
            assert await asyncio.wait_for(reader.read(), 5) == b""
            writer.close()

            for _ in range(50):
                if not server.runner.server.connections:
                    break
                await asyncio.sleep(0.1)
            assert server.runner.server.connections == []


class TestTLSRelay:
    """Relays over a TLS listener and to TLS backends with self-signed certificates."""

    @pytest.mark.asyncio
    async def test_tls_listener_to_tls_backend(
        self, backend_factory, tls_server_context, tls_client_context
    ):
        backend = await backend_factory(
            b"HTTP/1.1 101 Switching Protocols\r\nUpgrade: websocket\r\nConnection: Upgrade\r\n\r\n",
            echo_once=True,
            ssl_context=tls_server_context,
        )
        proxy = make_proxy(local_registry())
        runner = web.AppRunner(make_app(proxy))
        await runner.setup()
        site = web.TCPSite(runner, "127.0.0.1", 0, ssl_context=tls_server_context)
        await site.start()
        port = runner.addresses[0][1]

        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", port, ssl=tls_client_context)
            writer.write(
                f"GET /secure HTTP/1.1\r\nHost: ip127-0-0-1-{backend.port}.example.com\r\n"
                "Upgrade: websocket\r\nConnection: Upgrade\r\n\r\n".encode()
            )
            await writer.drain()

            # The request arrived over TLS, so the backend is dialed over TLS
            # and its self-signed certificate is accepted.
            head, _ = await asyncio.wait_for(backend.requests.get(), 5)
            assert head.startswith(b"GET /secure HTTP/1.1\r\n")

            status = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), 5)
            assert status.startswith(b"HTTP/1.1 101 Switching Protocols")

            writer.write(b"\x81\x02hi")
            await writer.drain()
            assert await asyncio.wait_for(reader.readexactly(4), 5) == b"\x81\x02hi"
            writer.close()
        finally:
            await runner.cleanup()

    @pytest.mark.asyncio
    async def test_plain_listener_to_tls_backend_on_443(self, tls_server_context):
        """Port 443 selects TLS; the dialer reaches a self-signed backend."""
        received: asyncio.Queue[bytes] = asyncio.Queue()

        async def handle(reader, writer):
            received.put_nowait(await reader.readuntil(b"\r\n\r\n"))
            writer.write(b"HTTP/1.1 200 OK\r\nContent-Length: 2\r\n\r\nok")
            await writer.drain()
            writer.close()

        backend = await asyncio.start_server(handle, "127.0.0.1", 0, ssl=tls_server_context)
        backend_port = backend.sockets[0].getsockname()[1]
        registry = MemoryInstanceRegistry([Instance(ip="127.0.0.1")])

        def director(req):
            make_director(registry, "80")(req)
            assert req.scheme == "https"
            req.url_host = f"127.0.0.1:{backend_port}"

        proxy = TCPProxy(registry=registry, director=director)
        try:
            async with TestServer(make_app(proxy)) as server:
                reader, writer = await asyncio.open_connection(server.host, server.port)
                writer.write(b"GET / HTTP/1.1\r\nHost: ip127-0-0-1-443.example.com\r\n\r\n")
                await writer.drain()

                head = await asyncio.wait_for(received.get(), 5)
                assert head.startswith(b"GET / HTTP/1.1\r\n")
                response = await asyncio.wait_for(reader.readuntil(b"ok"), 5)
                assert response.startswith(b"HTTP/1.1 200 OK")
                writer.close()
        finally:
            backend.close()
            await backend.wait_closed()
