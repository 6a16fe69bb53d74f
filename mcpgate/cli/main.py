"""
mcpgate CLI - inspect and exercise tool servers from the terminal.

Server definitions come from .mcpgate/config.yaml (see mcpgate.validation).
Local-process servers need the stdio proxy running: `mcpgate proxy`.
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from mcpgate import __version__
from mcpgate.gateway import sandbox
from mcpgate.gateway.executor import ToolExecutor, get_tool_execution_summary
from mcpgate.gateway.manager import ConnectionManager
from mcpgate.gateway.proxy import ProxyClient
from mcpgate.gateway.schema import ServerConfig, ServerTool, ToolCall
from mcpgate.logging_config import setup_logging
from mcpgate.providers.base import ToolFormatFactory, Vendor, format_tools_for
from mcpgate.validation.config import Config, ConfigError

console = Console()
status_console = Console(stderr=True)


def _load_config(config_path: Optional[str]) -> Config:
    try:
        config = Config.load(Path(config_path) if config_path else None)
        settings = config.merged
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    setup_logging(settings.logging.level, settings.logging.file, settings.logging.format)
    return config


def _build_manager(config: Config) -> ConnectionManager:
    settings = config.merged.gateway
    return ConnectionManager(
        proxy=ProxyClient(settings.proxy_url, timeout=settings.call_timeout),
        connect_timeout=settings.connect_timeout,
        call_timeout=settings.call_timeout,
    )


async def _connect_servers(manager: ConnectionManager, servers: List[ServerConfig]) -> None:
    """Connect every server concurrently; report failures without stopping."""
    outcomes = await asyncio.gather(
        *(manager.connect(server) for server in servers), return_exceptions=True
    )
    for server, outcome in zip(servers, outcomes):
        if isinstance(outcome, BaseException):
            status_console.print(f"  [red]✗[/red] {server.name}: {outcome}")
        else:
            status_console.print(f"  [green]✓[/green] {server.name}")


async def _list_tools(config: Config) -> List[ServerTool]:
    async with _build_manager(config) as manager:
        await _connect_servers(manager, config.enabled_servers())
        return manager.get_all_tools()


async def _call_tool(config: Config, call: ToolCall):
    settings = config.merged.gateway
    async with _build_manager(config) as manager:
        await _connect_servers(manager, config.enabled_servers())
        executor = ToolExecutor(
            manager,
            call_timeout=settings.call_timeout,
            max_result_chars=settings.max_result_chars,
        )
        return await executor.execute_tool_calls([call], manager.get_all_tools())


@click.group()
@click.version_option(__version__, prog_name="mcpgate")
def cli() -> None:
    """
    mcpgate - tool protocol gateway.

    \b
    Examples:
        mcpgate validate npx -y @modelcontextprotocol/server-memory
        mcpgate tools --vendor anthropic
        mcpgate call search_repositories --args '{"query": "mcp"}'
        mcpgate proxy --port 8765
    """


@cli.command(context_settings={"ignore_unknown_options": True})
@click.argument("command")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
def validate(command: str, args: Tuple[str, ...]) -> None:
    """Check a launch command against the sandbox."""
    result = sandbox.validate_command(command, list(args))
    if result.valid and result.sanitized is not None:
        line = " ".join([result.sanitized.command, *result.sanitized.args])
        console.print(Panel(line, title="[green]Allowed[/green]", border_style="green"))
    else:
        console.print(Panel(result.error or "", title="[red]Rejected[/red]", border_style="red"))
        sys.exit(1)


@cli.command()
@click.option("--config", "config_path", type=click.Path(exists=True), help="Config file")
@click.option(
    "--vendor",
    type=click.Choice(ToolFormatFactory.available_vendors()),
    help="Print the tool list in this vendor's format as JSON",
)
def tools(config_path: Optional[str], vendor: Optional[str]) -> None:
    """Connect configured servers and list their tools."""
    config = _load_config(config_path)
    if not config.enabled_servers():
        console.print("[yellow]No servers configured. Add them under `servers:` in .mcpgate/config.yaml[/yellow]")
        return

    status_console.print("[bold]Connecting...[/bold]")
    all_tools = asyncio.run(_list_tools(config))

    if vendor:
        click.echo(json.dumps(format_tools_for(Vendor(vendor), all_tools), indent=2))
        return

    table = Table(title=f"Available tools ({len(all_tools)})")
    table.add_column("Tool", style="cyan")
    table.add_column("Server")
    table.add_column("Description", style="dim")
    for tool in all_tools:
        table.add_row(tool.name, tool.server_name, (tool.description or "").split("\n")[0][:80])
    console.print(table)


@cli.command()
@click.argument("tool_name")
@click.option("--args", "arguments", default="{}", help="Tool arguments as a JSON object")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Config file")
def call(tool_name: str, arguments: str, config_path: Optional[str]) -> None:
    """Execute a single tool call."""
    try:
        tool_input = json.loads(arguments)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="--args")
    if not isinstance(tool_input, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--args")

    config = _load_config(config_path)
    results = asyncio.run(_call_tool(config, ToolCall(name=tool_name, input=tool_input)))

    for result in results:
        style = "red" if result.is_error else "green"
        console.print(Panel(
            str(result.result),
            title=f"[{style}]{result.tool_name}[/{style}]",
            subtitle=f"{result.duration_ms} ms",
            border_style=style,
        ))
    console.print(f"[dim]{get_tool_execution_summary(results)}[/dim]")
    if any(r.is_error for r in results):
        sys.exit(1)


@cli.command()
@click.option("--host", default=None, help="Bind address (default from config)")
@click.option("--port", default=None, type=int, help="Port (default from config)")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Config file")
def proxy(host: Optional[str], port: Optional[int], config_path: Optional[str]) -> None:
    """Run the stdio proxy that launches local tool servers."""
    import uvicorn

    from mcpgate.gateway.proxy import StdioProxy, create_proxy_app

    config = _load_config(config_path)
    settings = config.merged.proxy
    app = create_proxy_app(StdioProxy(request_timeout=settings.request_timeout))

    bind_host = host or settings.host
    bind_port = port or settings.port
    console.print(f"[bold blue]Stdio proxy listening on http://{bind_host}:{bind_port}[/bold blue]")
    uvicorn.run(app, host=bind_host, port=bind_port, log_config=None)


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
