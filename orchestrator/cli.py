"""
Ops Assistant operator CLI.

Module: orchestrator/cli.py
"""

from pathlib import Path
from typing import Any, Dict, List, Optional
import sys
import uuid

import anyio
import click
import httpx
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Load environment variables before settings are built
for _env_path in (Path(__file__).resolve().parent.parent / ".env", Path.cwd() / ".env"):
    if _env_path.exists():
        load_dotenv(_env_path, override=False)

from mcp_gateway.service.config import GatewaySettings, load_provider_configs
from mcp_gateway.service.registry import ToolRegistry

from .service.config import OrchestratorConfig
from .service.tools import build_tools_array

console = Console()

VERSION = "1.0.0"


async def _load_registry(settings: GatewaySettings) -> Optional[ToolRegistry]:
    """Connect to the configured providers; None when none is configured."""
    providers = load_provider_configs(settings)
    if not providers:
        return None
    registry = ToolRegistry(providers, settings=settings)
    await registry.initialize()
    return registry


def _open_registry() -> ToolRegistry:
    registry = anyio.run(_load_registry, GatewaySettings())
    if registry is None:
        console.print("[red]No MCP servers configured.[/red]")
        console.print("[dim]Create mcp.config.yaml or set MCP_AGENT_URL and MCP_AGENT_TOKEN.[/dim]")
        sys.exit(1)
    return registry


def _close_registry(registry: ToolRegistry) -> None:
    anyio.run(registry.close)


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """
    Ops Assistant - conversational monitoring over MCP servers.

    Inspect the tool registry, run the service, or ask a running service
    a question.
    """
    if version:
        console.print(f"[bold green]Ops Assistant v{VERSION}[/bold green]")
        sys.exit(0)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to HOST)")
@click.option("--port", default=None, type=int, help="Port (defaults to PORT)")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
def serve(host: Optional[str], port: Optional[int], reload: bool) -> None:
    """Run the HTTP service."""
    import uvicorn

    settings = OrchestratorConfig()
    uvicorn.run(
        "orchestrator.service.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload or settings.reload,
        log_level=settings.log_level.lower(),
    )


@cli.command()
@click.option("--pattern", default=None, help="Regex matched against host keys and host names")
def hosts(pattern: Optional[str]) -> None:
    """List the hosts known to the configured MCP servers."""
    registry = _open_registry()
    try:
        if pattern:
            result = registry.search_hosts(pattern)
            if not result.get("ok"):
                console.print(f"[red]✗ {result.get('error')}[/red]")
                sys.exit(1)
            entries = result.get("hosts", {})
        else:
            entries = registry.get_aggregated_hosts()
    finally:
        _close_registry(registry)

    if not entries:
        console.print("[yellow]No hosts found.[/yellow]")
        return

    table = Table(title="Known Hosts", show_header=True, header_style="bold magenta")
    table.add_column("Host", style="cyan", no_wrap=True)
    table.add_column("Host Name", style="green")
    table.add_column("Server", style="blue")
    table.add_column("Protocols", style="dim")

    for key, entry in entries.items():
        attributes = entry.get("attributes") or {}
        protocols = ", ".join(str(p.get("type")) for p in entry.get("protocols") or [] if isinstance(p, dict))
        table.add_row(key, str(attributes.get("host.name") or ""), entry.get("server_label", ""), protocols)

    console.print(table)
    console.print(f"\n[dim]Total: {len(entries)} host key(s)[/dim]\n")


@cli.command()
def tools() -> None:
    """Show the tool catalog advertised to the model."""
    registry = _open_registry()
    try:
        catalog = build_tools_array(registry, OrchestratorConfig())
    finally:
        _close_registry(registry)

    table = Table(title="Tool Catalog", show_header=True, header_style="bold magenta")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Type", style="dim")
    table.add_column("Description", style="green")

    for tool in catalog:
        description = (tool.get("description") or "").split("\n")[0]
        if len(description) > 70:
            description = description[:67] + "..."
        table.add_row(tool.get("name") or tool["type"], tool["type"], description)

    console.print(table)


def _print_transcript(data: Dict[str, Any]) -> None:
    messages: List[Dict[str, Any]] = data.get("messages") or []
    for message in messages:
        text = (message.get("text") or "").strip()
        if text:
            console.print(Panel(text, border_style="green"))

    for upload in data.get("uploads") or []:
        console.print(f"[blue]📎 {upload.get('filename')}[/blue] [dim]({upload.get('size')} bytes)[/dim]")

    for suggestion in data.get("suggested_prompts") or []:
        prompts = ", ".join(p.get("title", "") for p in suggestion.get("prompts") or [])
        console.print(f"[yellow]{suggestion.get('title')}[/yellow] [dim]{prompts}[/dim]")

    console.print(
        f"\n[dim]response {data.get('response_id')} after {data.get('iterations', 0)} iteration(s)[/dim]"
    )


@cli.command()
@click.argument("text")
@click.option("--url", default="http://localhost:8000", show_default=True, help="Service base URL")
@click.option("--thread", "thread_id", default=None, help="Thread id (a new one by default)")
@click.option("--user", "sender_id", default="cli-user", show_default=True, help="Sender id")
@click.option("--timeout", default=300.0, show_default=True, help="Request timeout in seconds")
def ask(text: str, url: str, thread_id: Optional[str], sender_id: str, timeout: float) -> None:
    """Ask a running service a question."""
    message_ts = uuid.uuid4().hex
    body = {
        "message": {
            "channel": "cli",
            "thread_id": thread_id or message_ts,
            "text": text,
            "sender_id": sender_id,
            "message_ts": message_ts,
        }
    }

    try:
        response = httpx.post(f"{url.rstrip('/')}/chat", json=body, timeout=timeout)
        response.raise_for_status()
    except httpx.HTTPError as e:
        console.print(f"[red]✗ Request failed: {e}[/red]")
        sys.exit(1)

    _print_transcript(response.json())


def main() -> None:
    """Console script entry point."""
    cli()


if __name__ == "__main__":
    main()
