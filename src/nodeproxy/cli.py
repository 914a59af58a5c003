"""Nodeproxy CLI - Command line interface."""

from __future__ import annotations

import asyncio
import ipaddress
import sys

import click
from rich.console import Console
from rich.table import Table

from nodeproxy.server.main import BANNER

console = Console()


@click.group()
def main():
    """Nodeproxy - route connections to dynamically addressed nodes.

    Examples:

        nodeproxy instance add 10.0.0.5 --session a1b2c3d4e5 --alias web

        nodeproxy status --server 127.0.0.1:8081

        nodeproxy config show
    """
    pass


@main.command()
def version():
    """Show version information."""
    from nodeproxy import __version__

    console.print(BANNER, style="cyan")
    console.print(f"[bold]Version:[/bold] {__version__}")
    console.print(f"[bold]Python:[/bold] {sys.version}")


@main.command()
@click.option("--server", default="127.0.0.1:8081", help="Control plane address")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def status(server: str, json_output: bool):
    """Show server health, relay count and registered instances."""
    import httpx

    base_url = server if server.startswith("http") else f"http://{server}"

    try:
        with httpx.Client(timeout=5.0) as client:
            health = client.get(f"{base_url}/health").json()
            stats = client.get(f"{base_url}/stats").json()
            instances = client.get(f"{base_url}/instances").json().get("instances", [])
    except (httpx.HTTPError, ValueError) as e:
        console.print(f"[red]Error connecting to server:[/red] {e}")
        sys.exit(1)

    if json_output:
        import json

        console.print(json.dumps({"health": health, "stats": stats, "instances": instances}, indent=2))
        return

    console.print(f"\n[bold]Server:[/bold] {server}")
    console.print(f"[bold]Status:[/bold] [green]{health.get('status', 'unknown')}[/green]")
    console.print(f"[bold]Active Relays:[/bold] {stats.get('active_relays', 0)}")
    _print_instances(instances)


def _print_instances(instances: list[dict]) -> None:
    if not instances:
        console.print("\n[dim]No instances registered[/dim]")
        return

    table = Table(title="Registered Instances")
    table.add_column("IP", style="cyan")
    table.add_column("Session", style="dim")
    table.add_column("Alias")
    table.add_column("Hostname")
    table.add_column("Created At")

    for inst in instances:
        table.add_row(
            inst.get("ip", ""),
            inst.get("session_id", ""),
            inst.get("alias", ""),
            inst.get("hostname", ""),
            inst.get("created_at", "")[:19],
        )

    console.print(table)


@main.group()
def config():
    """View and export configuration settings.

    Tunables are read from environment variables with the NODEPROXY_
    prefix. Use these commands to see current values.
    """
    pass


@config.command("show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("--section", "-s", help="Show only specific section (performance, timeouts)")
def config_show(json_output: bool, section: str | None):
    """Show current configuration settings."""
    from nodeproxy.core.config import get_config

    display = get_config().to_display_dict()

    if section:
        section = section.lower()
        if section not in display:
            console.print(f"[red]Unknown section:[/red] {section}")
            console.print(f"[dim]Available: {', '.join(display.keys())}[/dim]")
            sys.exit(1)
        display = {section: display[section]}

    if json_output:
        import json
        console.print(json.dumps(display, indent=2))
        return

    for section_name, settings in display.items():
        table = Table(title=section_name.replace("_", " ").title())
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")
        table.add_column("Env Variable", style="dim")

        for key, value in settings.items():
            value_str = str(value) if value is not None else "[dim]None[/dim]"
            table.add_row(key, value_str, f"NODEPROXY_{key.upper()}")

        console.print(table)
        console.print()


@config.command("export")
@click.option("--shell", type=click.Choice(["bash", "powershell", "cmd"]), default="bash", help="Shell format")
def config_export(shell: str):
    """Export current configuration as environment variables."""
    from nodeproxy.core.config import get_config

    console.print(f"# Nodeproxy Configuration Export ({shell})")

    for key, value in get_config().to_env_dict().items():
        if shell == "bash":
            console.print(f'export {key}="{value}"')
        elif shell == "powershell":
            console.print(f'$env:{key}="{value}"')
        elif shell == "cmd":
            console.print(f"set {key}={value}")


@config.command("validate")
def config_validate():
    """Validate current configuration."""
    from pydantic import ValidationError

    from nodeproxy.core.config import clear_config, get_config

    clear_config()

    try:
        cfg = get_config()
        perf = cfg.performance
        timeouts = cfg.timeouts
    except ValidationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)

    errors = []
    warnings = []

    if perf.relay_buffer_size < 1024:
        warnings.append(f"relay_buffer_size ({perf.relay_buffer_size}) is very small, may impact throughput")
    if perf.relay_buffer_size <= 0:
        errors.append("relay_buffer_size must be positive")
    if timeouts.connect_timeout is not None and timeouts.connect_timeout < 0:
        errors.append(f"connect_timeout ({timeouts.connect_timeout}s) must not be negative")
    if timeouts.relay_idle_timeout is None:
        warnings.append("relay_idle_timeout is unset: stalled relays hold both sockets indefinitely")

    for error in errors:
        console.print(f"  [red]x[/red] {error}")
    for warning in warnings:
        console.print(f"  [yellow]![/yellow] {warning}")

    if errors:
        console.print("[red]ERROR - Configuration has errors[/red]")
        sys.exit(1)
    elif warnings:
        console.print("[green]OK - Configuration is valid (with warnings)[/green]")
    else:
        console.print("[green]OK - Configuration is valid[/green]")


@main.group()
def instance():
    """Manage the instance registry file.

    Changes take effect the next time the server loads the registry. Use the
    control plane (POST /instances) to update a running server.
    """
    pass


@instance.command("add")
@click.argument("ip")
@click.option("--session", "session_id", default="", help="Session the instance belongs to")
@click.option("--alias", default="", help="Alias within the session")
@click.option("--hostname", default="", help="Instance hostname")
@click.option("--storage", default="instances.json", help="Path to instance storage file")
def instance_add(ip: str, session_id: str, alias: str, hostname: str, storage: str):
    """Register an instance by IP address."""
    try:
        ipaddress.ip_address(ip)
    except ValueError:
        console.print(f"[red]Error:[/red] {ip} is not an IP address")
        sys.exit(1)
    asyncio.run(_instance_add_async(ip, session_id, alias, hostname, storage))


async def _instance_add_async(ip: str, session_id: str, alias: str, hostname: str, storage: str):
    from nodeproxy.registry import Instance, InstanceStore, MemoryInstanceRegistry

    store = InstanceStore(storage)
    registry = MemoryInstanceRegistry()
    await store.load_into(registry)
    registry.add(Instance(ip=ip, session_id=session_id, alias=alias, hostname=hostname))
    await store.save_from(registry)
    console.print(f"[green]Registered[/green] {ip}" + (f" as {alias}" if alias else ""))


@instance.command("list")
@click.option("--storage", default="instances.json", help="Path to instance storage file")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def instance_list(storage: str, json_output: bool):
    """List registered instances."""
    asyncio.run(_instance_list_async(storage, json_output))


async def _instance_list_async(storage: str, json_output: bool):
    import json

    from nodeproxy.registry import InstanceStore

    instances = [inst.to_dict() for inst in await InstanceStore(storage).load()]

    if json_output:
        console.print(json.dumps(instances, indent=2))
        return

    _print_instances(instances)


@instance.command("remove")
@click.argument("ip")
@click.option("--storage", default="instances.json", help="Path to instance storage file")
def instance_remove(ip: str, storage: str):
    """Remove an instance from the registry."""
    asyncio.run(_instance_remove_async(ip, storage))


async def _instance_remove_async(ip: str, storage: str):
    from nodeproxy.registry import InstanceStore, MemoryInstanceRegistry

    store = InstanceStore(storage)
    registry = MemoryInstanceRegistry()
    await store.load_into(registry)
    if not registry.remove(ip):
        console.print(f"[red]Error:[/red] No instance registered at {ip}")
        sys.exit(1)
    await store.save_from(registry)
    console.print(f"[green]Removed[/green] {ip}")


if __name__ == "__main__":
    main()
