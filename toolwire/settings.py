"""
Runtime settings for the server manager.

Values come from the process environment, after loading a `.env` file from the
current working directory if one exists.
"""

import logging
import os
import pathlib
from dataclasses import dataclass, field

from dotenv import load_dotenv

log = logging.getLogger(__name__)

ENV_PREFIX = "TOOLWIRE_"


@dataclass(frozen=True)
class Settings:
    home: pathlib.Path = field(default_factory=lambda: pathlib.Path.home() / ".toolwire")
    connect_timeout: float = 30.0
    request_timeout: float = 30.0
    call_timeout: float = 60.0
    failure_threshold: int = 3
    shutdown_grace: float = 5.0

    @property
    def store_path(self) -> pathlib.Path:
        return self.home / "mcp-servers.json"

    @property
    def mcp_json_paths(self) -> list[pathlib.Path]:
        cwd = pathlib.Path.cwd()
        return [cwd / ".mcp.json", cwd / "mcp.json", self.home / "mcp.json"]


def _read(name: str, cast, default):
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        log.warning(f"[Settings] Ignoring invalid value for {ENV_PREFIX + name}: {raw!r}")
        return default
    if isinstance(value, (int, float)) and value <= 0:
        log.warning(f"[Settings] {ENV_PREFIX + name} must be positive, got {raw!r}")
        return default
    return value


def load_settings(dotenv_path: str | None = None) -> Settings:
    """Build a Settings object from the environment and an optional .env file."""
    load_dotenv(dotenv_path=dotenv_path or os.path.join(os.getcwd(), ".env"))

    defaults = Settings()
    home = os.getenv(ENV_PREFIX + "HOME")
    settings = Settings(
        home=pathlib.Path(home).expanduser() if home else defaults.home,
        connect_timeout=_read("CONNECT_TIMEOUT", float, defaults.connect_timeout),
        request_timeout=_read("REQUEST_TIMEOUT", float, defaults.request_timeout),
        call_timeout=_read("CALL_TIMEOUT", float, defaults.call_timeout),
        failure_threshold=_read("FAILURE_THRESHOLD", int, defaults.failure_threshold),
        shutdown_grace=_read("SHUTDOWN_GRACE", float, defaults.shutdown_grace),
    )
    log.debug(f"[Settings] Loaded settings: {settings}")
    return settings
