"""Nodeproxy Server - Main entry point."""

import asyncio
import logging

import click
import structlog
from pydantic import ValidationError
from rich.console import Console

from nodeproxy.core.config import ServerConfig, server_settings_from_file
from nodeproxy.server.relay import ProxyServer

console = Console()

BANNER = """
 _   _           _
| \\ | | ___   __| | ___ _ __  _ __ _____  ___   _
|  \\| |/ _ \\ / _` |/ _ \\ '_ \\| '__/ _ \\ \\/ / | | |
| |\\  | (_) | (_| |  __/ |_) | | | (_) >  <| |_| |
|_| \\_|\\___/ \\__,_|\\___| .__/|_|  \\___/_/\\_\\\\__, |
                       |_|                  |___/
                     RELAY SERVER
"""


def configure_logging(log_level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
    )


@click.command()
@click.option(
    "--config", "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Path to YAML or TOML config file (keys are server options)",
)
@click.option("--http-bind", default=None, help="Relay plane bind address (default: 0.0.0.0:80)")
@click.option("--control-bind", default=None, help="Control plane bind address (default: 127.0.0.1:8081)")
@click.option(
    "--port-number",
    envvar="NODEPROXY_PORT_NUMBER",
    default=None,
    help="Public port of this proxy; Host ports equal to it are ignored (default: 80)",
)
@click.option("--domain", "-d", "base_domain", default=None, help="Base domain served by the proxy")
@click.option("--cert", envvar="NODEPROXY_CERT_PATH", help="TLS certificate path")
@click.option("--key", envvar="NODEPROXY_KEY_PATH", help="TLS private key path")
@click.option(
    "--registry",
    "registry_path",
    envvar="NODEPROXY_REGISTRY_PATH",
    default=None,
    help="Instance registry JSON file (default: instances.json)",
)
@click.option(
    "--backend-tls-verify/--no-backend-tls-verify",
    default=None,
    help="Verify certificates of TLS backends (default: no)",
)
@click.option("--backend-ca", "backend_ca_path", default=None, help="CA bundle for TLS backends")
@click.option(
    "--alias-liveness/--no-alias-liveness",
    default=None,
    help="Let alias hosts without a node pass the liveness gate (default: no)",
)
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="info",
    help="Log level (default: info)",
)
def main(
    config_file: str | None,
    http_bind: str | None,
    control_bind: str | None,
    port_number: str | None,
    base_domain: str | None,
    cert: str | None,
    key: str | None,
    registry_path: str | None,
    backend_tls_verify: bool | None,
    backend_ca_path: str | None,
    alias_liveness: bool | None,
    log_level: str,
):
    """Run the Nodeproxy relay server."""
    configure_logging(log_level)
    console.print(BANNER, style="cyan")

    settings: dict = {}
    if config_file:
        try:
            settings.update(server_settings_from_file(config_file))
        except ValueError as e:
            console.print(f"[red]Configuration error:[/red] {e}")
            raise SystemExit(1) from e

    overrides = {
        "http_bind": http_bind,
        "control_bind": control_bind,
        "port_number": port_number,
        "base_domain": base_domain,
        "cert_path": cert,
        "key_path": key,
        "registry_path": registry_path,
        "backend_tls_verify": backend_tls_verify,
        "backend_ca_path": backend_ca_path,
        "alias_liveness": alias_liveness,
    }
    settings.update({k: v for k, v in overrides.items() if v is not None})
    try:
        config = ServerConfig(**settings)
    except ValidationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise SystemExit(1) from e

    console.print(f"Starting relay server for {config.base_domain}...", style="yellow")
    console.print(f"Relay: {config.http_bind} (public port {config.port_number})", style="dim")
    console.print(f"Control: {config.control_bind}", style="dim")
    console.print(f"Registry: {config.registry_path}", style="dim")
    if not config.backend_tls_verify:
        console.print("Backend TLS verification: disabled", style="dim")

    asyncio.run(run_server(config))


async def run_server(config: ServerConfig):
    """Run the proxy server."""
    server = ProxyServer(config)

    try:
        await server.start()
        console.print("Server started, press Ctrl+C to stop", style="green")

        await asyncio.Event().wait()
    except KeyboardInterrupt:
        console.print("\nShutting down...", style="yellow")
    finally:
        await server.stop()


if __name__ == "__main__":
    main()
