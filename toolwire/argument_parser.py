import argparse
import json
from collections.abc import Sequence

from toolwire.utils.errors import ConfigError


def parse_args(args: Sequence[str] | None = None) -> argparse.Namespace:
    """
    Parse command line arguments for the toolwire CLI.

    Args:
        args (Optional[Sequence[str]], optional): Arguments to parse. Defaults to sys.argv.

    Returns:
        argparse.Namespace: The parsed command line arguments as a Namespace object.
    """

    parser = argparse.ArgumentParser(
        description="Manage MCP servers and call the tools they expose.",
        add_help=True,
    )

    parser.add_argument(
        "--config",
        action="append",
        default=None,
        metavar="PATH",
        help=(
            "Path to an mcp.json file with an 'mcpServers' object. May be given more than once. "
            "(default: ./.mcp.json, ./mcp.json and $TOOLWIRE_HOME/mcp.json)"
        ),
    )

    parser.add_argument(
        "--mode",
        choices=["status", "tools", "call"],
        default="status",
        help=(
            "Use 'status' to list servers and their connection state, 'tools' to list the merged tool set, "
            "'call' to invoke one tool. (default: status)"
        ),
    )

    parser.add_argument(
        "--tool",
        default="",
        metavar="[name or server:name]",
        help="Tool to invoke in 'call' mode. (default: empty string)",
    )

    parser.add_argument(
        "--args",
        default="{}",
        metavar="JSON",
        help="JSON object of tool arguments for 'call' mode. (default: {})",
    )

    parser.add_argument(
        "--logConfig",
        default=None,
        help=("A custom path to a JSON logging configuration file."),
    )

    parser.add_argument(
        "--version",
        action="store_true",
        help="Display the version of toolwire and exit.",
    )

    return parser.parse_args(args)


def check_parse_conflicts(args: argparse.Namespace) -> None:
    """
    Check for conflicts in the parsed arguments.

    Args:
        args (argparse.Namespace): The parsed command line arguments.

    Raises:
        ConfigError: If there are conflicts in the arguments.
    """

    if args.mode == "call" and args.tool == "":
        raise ConfigError("A --tool is required in 'call' mode. See --help for more information.")

    if args.mode == "call":
        try:
            tool_args = json.loads(args.args)
        except json.JSONDecodeError as e:
            raise ConfigError(f"--args is not valid JSON: {e}") from e
        if not isinstance(tool_args, dict):
            raise ConfigError("--args must be a JSON object.")
