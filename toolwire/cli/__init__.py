from .main import app_entrypoint, cli_entrypoint

__all__ = ["app_entrypoint", "cli_entrypoint"]
