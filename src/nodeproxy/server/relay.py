"""Proxy server: the relay plane plus a small control plane."""

from __future__ import annotations

import ssl
from pathlib import Path

import structlog
from aiohttp import web

from nodeproxy.core.config import ServerConfig, get_config
from nodeproxy.observability.metrics import generate_metrics, get_content_type
from nodeproxy.registry import Instance, InstanceStore, MemoryInstanceRegistry
from nodeproxy.routing import HostRouter, make_director
from nodeproxy.server.dial import BackendDialer, Dialer, create_backend_ssl_context
from nodeproxy.server.handler import TCPProxy

logger = structlog.get_logger()


class ProxyServer:
    """Serves routed relays on the HTTP plane and registry admin on the control plane."""

    def __init__(
        self,
        config: ServerConfig,
        registry: MemoryInstanceRegistry | None = None,
        dialer: Dialer | None = None,
    ):
        self.config = config
        self.registry = registry if registry is not None else MemoryInstanceRegistry()
        self.store = InstanceStore(config.registry_path)
        self._ssl_context: ssl.SSLContext | None = None
        self._control_app: web.Application | None = None
        self._http_app: web.Application | None = None
        self._control_runner: web.AppRunner | None = None
        self._http_runner: web.AppRunner | None = None

        global_config = get_config()
        if dialer is None:
            dialer = BackendDialer(
                ssl_context=create_backend_ssl_context(
                    verify=config.backend_tls_verify,
                    ca_path=config.backend_ca_path,
                ),
                connect_timeout=global_config.timeouts.connect_timeout,
            )
        self.proxy = TCPProxy(
            registry=self.registry,
            director=make_director(self.registry, config.port_number),
            dialer=dialer,
            host_router=HostRouter(config.node_host_pattern, config.alias_host_pattern),
            buffer_size=global_config.performance.relay_buffer_size,
            idle_timeout=global_config.timeouts.relay_idle_timeout,
            alias_liveness=config.alias_liveness,
        )

    def _create_ssl_context(self) -> ssl.SSLContext | None:
        """Create SSL context from certificate files."""
        if not self.config.cert_path or not self.config.key_path:
            logger.warning("No TLS certificates provided, running without TLS")
            return None

        cert_path = Path(self.config.cert_path)
        key_path = Path(self.config.key_path)

        if not cert_path.exists():
            logger.error("Certificate file not found", path=str(cert_path))
            return None

        if not key_path.exists():
            logger.error("Key file not found", path=str(key_path))
            return None

        try:
            ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            ssl_context.load_cert_chain(str(cert_path), str(key_path))
            ssl_context.minimum_version = ssl.TLSVersion.TLSv1_2
            logger.info("TLS context created", cert=str(cert_path))
            return ssl_context
        except (ssl.SSLError, OSError) as e:
            logger.error("Failed to create SSL context", error=str(e))
            return None

    def create_http_app(self) -> web.Application:
        app = web.Application(client_max_size=get_config().performance.http_max_body_size)
        app.router.add_route("*", "/{path:.*}", self.proxy)
        return app

    def create_control_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._handle_health_check)
        app.router.add_get("/stats", self._handle_stats)
        app.router.add_get("/metrics", self._handle_metrics)
        app.router.add_get("/instances", self._handle_list_instances)
        app.router.add_post("/instances", self._handle_add_instance)
        app.router.add_delete("/instances/{ip}", self._handle_remove_instance)
        return app

    async def start(self) -> None:
        """Start both planes after loading the registry from storage."""
        loaded = await self.store.load_into(self.registry)
        logger.info("Instance registry loaded", path=str(self.store.storage_path), instances=loaded)

        self._ssl_context = self._create_ssl_context()
        self._control_app = self.create_control_app()
        self._http_app = self.create_http_app()

        self._control_runner = web.AppRunner(self._control_app)
        self._http_runner = web.AppRunner(self._http_app)
        await self._control_runner.setup()
        await self._http_runner.setup()

        control_host, control_port = self._parse_bind(self.config.control_bind)
        control_site = web.TCPSite(self._control_runner, control_host, control_port)
        await control_site.start()
        logger.info("Control plane started", host=control_host, port=control_port)

        http_host, http_port = self._parse_bind(self.config.http_bind)
        http_site = web.TCPSite(
            self._http_runner,
            http_host,
            http_port,
            ssl_context=self._ssl_context,
        )
        await http_site.start()
        logger.info(
            "Relay plane started",
            host=http_host,
            port=http_port,
            tls=self._ssl_context is not None,
        )

    def _parse_bind(self, bind: str) -> tuple[str, int]:
        """Parse bind address into host and port."""
        if ":" in bind:
            host, port = bind.rsplit(":", 1)
            return host, int(port)
        return bind, 80

    async def stop(self) -> None:
        """Stop the server; relays in progress are cancelled by the runners."""
        logger.info("Stopping proxy server...")
        if self._control_runner:
            await self._control_runner.cleanup()
        if self._http_runner:
            await self._http_runner.cleanup()
        logger.info("Proxy server stopped")

    async def _handle_health_check(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "healthy"})

    async def _handle_stats(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "instances": len(self.registry),
                "active_relays": self.proxy.active_relays,
                "port_number": self.config.port_number,
                "base_domain": self.config.base_domain,
            }
        )

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        """Prometheus metrics endpoint."""
        return web.Response(
            body=generate_metrics(),
            headers={"Content-Type": get_content_type()},
        )

    async def _handle_list_instances(self, request: web.Request) -> web.Response:
        return web.json_response({"instances": [inst.to_dict() for inst in self.registry.list_all()]})

    async def _handle_add_instance(self, request: web.Request) -> web.Response:
        try:
            data = await request.json()
            instance = Instance.from_dict(data)
        except (ValueError, TypeError, AttributeError) as e:
            return web.json_response({"error": f"Invalid instance: {e}"}, status=400)

        self.registry.add(instance)
        await self.store.save_from(self.registry)
        logger.info("Instance registered", ip=instance.ip, alias=instance.alias)
        return web.json_response(instance.to_dict(), status=201)

    async def _handle_remove_instance(self, request: web.Request) -> web.Response:
        ip = request.match_info["ip"]
        if not self.registry.remove(ip):
            return web.json_response({"error": f"Unknown instance: {ip}"}, status=404)

        await self.store.save_from(self.registry)
        logger.info("Instance removed", ip=ip)
        return web.json_response({"removed": ip})
