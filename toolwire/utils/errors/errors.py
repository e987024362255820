import builtins

from colorama import Fore, Style


class ToolwireError(Exception):
    """Base class for all manager errors with custom formatting."""

    def __init__(self, message, server_id=None, tool_name=None):
        super().__init__(message)
        self.message = message
        self.server_id = server_id
        self.tool_name = tool_name

    def __str__(self):
        start_bold = "\033[1m"
        end_bold = "\033[0m"
        formatted_message = (
            f"{start_bold}{Fore.RED}{self.__class__.__name__}:{end_bold} {self.message}{Style.RESET_ALL}"
        )

        # Add the server and tool the error relates to, if available
        context = []
        if self.server_id is not None:
            context.append(f"server {Fore.YELLOW}{self.server_id}{Style.RESET_ALL}")
        if self.tool_name is not None:
            context.append(f"tool {Fore.CYAN}{self.tool_name}{Style.RESET_ALL}")
        if context:
            formatted_message += f"\n  ({', '.join(context)})"

        return formatted_message


class ConfigError(ToolwireError):
    """
    Malformed or duplicate server configuration. Never reaches the registry.
    """

    def __init__(self, message, server_id=None, problems=None):
        super().__init__(message, server_id=server_id)
        self.problems = list(problems or [])


class UnknownServerError(ToolwireError):
    def __init__(self, server_id):
        super().__init__(f"No server registered with id '{server_id}'", server_id=server_id)


class ConnectionError(ToolwireError, builtins.ConnectionError):
    """
    A transport failed to establish or was lost.
    """


class ProtocolError(ToolwireError):
    """
    A connected transport returned malformed or unexpected data.
    """


class MCPError(ProtocolError):
    """JSON-RPC error object returned by a server."""

    def __init__(self, error_data, server_id=None):
        if not isinstance(error_data, dict):
            error_data = {"message": str(error_data)}
        self.code = error_data.get("code", -1)
        self.data = error_data.get("data")
        super().__init__(error_data.get("message", "Unknown error"), server_id=server_id)


class RequestTimeoutError(ToolwireError):
    def __init__(self, message, server_id=None, timeout=None):
        super().__init__(message, server_id=server_id)
        self.timeout = timeout


class DispatchError(ToolwireError):
    """
    A tool call could not be routed to a connected server.
    """


class ResolutionError(DispatchError):
    """
    Nothing is registered under the requested name.
    """

    def __init__(self, name, kind="tool"):
        super().__init__(f"Unknown {kind} '{name}'", tool_name=name if kind == "tool" else None)
        self.name = name
        self.kind = kind


class ExecutionError(ToolwireError):
    """
    The tool reported failure or the call timed out.
    """


class CircuitOpenError(ToolwireError):
    def __init__(self, message, tool_name=None, failures=0):
        super().__init__(message, tool_name=tool_name)
        self.failures = failures
