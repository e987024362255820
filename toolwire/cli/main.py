import asyncio
import json
import logging
import logging.config
import pathlib
import sys

from rich.console import Console
from rich.table import Table

from toolwire import __version__, argument_parser
from toolwire.mcp import MCPServerManager
from toolwire.utils import get_package_directory
from toolwire.utils.errors import ConfigError

log = logging.getLogger(__name__)

STATUS_STYLES = {
    "connected": "green",
    "connecting": "yellow",
    "error": "red",
    "disconnected": "grey50",
    "configured": "grey50",
}


def app_entrypoint(args) -> int:
    # Set a delineator for a new application run in log file
    log.debug("\n%s NEW LOG RUN %s\n", "=" * 60, "=" * 60)

    try:
        # Confirm that there are no known conflicts in the arguments before doing anything else
        argument_parser.check_parse_conflicts(args)
    except ConfigError as e:
        log.critical("ConfigError: %s", e.message)
        return 2

    if args.version:
        print(f"toolwire version: {__version__}")
        return 0

    log.debug("Arguments: %s", args)
    return asyncio.run(_run(args, Console()))


async def _run(args, console: Console) -> int:
    async with MCPServerManager.from_environment() as manager:
        await manager.initialize(mcp_json_paths=args.config)

        match args.mode:
            case "status":
                console.print(_status_table(manager))
            case "tools":
                console.print(_tools_table(manager))
            case "call":
                result = await manager.execute(args.tool, json.loads(args.args))
                if result.ok:
                    console.print(result.text or result.structured)
                    return 0
                console.print(f"[red]{result.kind.value}[/red]: {result.message}")
                return 1
            case _:
                # ArgParse will SysExit if choice not in list
                pass
    return 0


def _status_table(manager: MCPServerManager) -> Table:
    state = manager.state
    table = Table(title=f"MCP servers ({state.server_stats()['connected']}/{len(state.servers)} connected)")
    table.add_column("Id", style="bold blue")
    table.add_column("Transport")
    table.add_column("Enabled")
    table.add_column("Status")
    table.add_column("Details", overflow="fold")

    for server_id in sorted(state.servers):
        server = state.servers[server_id]
        status, message = state.status_message(server_id)
        table.add_row(
            server_id,
            server.transport.value,
            "yes" if server.enabled else "no",
            f"[{STATUS_STYLES.get(status, 'white')}]{status}[/]",
            message,
        )
    return table


def _tools_table(manager: MCPServerManager) -> Table:
    tools = manager.state.available_tools
    table = Table(title=f"Tools ({len(tools)})")
    table.add_column("Name", style="bold blue")
    table.add_column("Server")
    table.add_column("Description", overflow="fold")

    for builtin in manager.gateway.builtin_tools:
        table.add_row(builtin.name, "[grey50]built-in[/]", builtin.description)
    for tool in tools:
        table.add_row(tool.qualified_name, tool.server_name, tool.description or "")
    return table


def cli_entrypoint() -> None:
    """
    Initializes a custom logger based on the configuration file and runs the CLI.

    This is used to configure logging when ran standalone from any external scripts.
    Do not use this function if you have configured your own logger. Call `app_entrypoint()` directly.
    """

    args = argument_parser.parse_args()

    if args.logConfig is not None:
        # If a custom logging configuration file is specified, use it
        config_file = pathlib.Path(args.logConfig)
    else:
        config_file = pathlib.Path(get_package_directory()) / "config" / "log_config.json"

    try:
        with pathlib.Path.open(config_file) as f_in:
            config = json.load(f_in)
    except FileNotFoundError:
        print(f"Logging configuration not found: {config_file}", file=sys.stderr)
        sys.exit(1)

    file_handler = config.get("handlers", {}).get("file")
    if file_handler is not None:
        log_directory = pathlib.Path(file_handler["filename"]).parent
        log_directory.mkdir(parents=True, exist_ok=True)

    logging.config.dictConfig(config)

    sys.exit(app_entrypoint(args))
