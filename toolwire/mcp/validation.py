"""
MCP Server Config Validation

Checks raw server records (from disk, mcp.json or a caller) before they reach
the registry. Recoverable type mistakes are repaired in place, everything else
excludes the entry as a whole.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import urlsplit

from toolwire.utils.errors import ConfigError

from .config import CONFIG_TYPES, ServerConfig, TransportType

log = logging.getLogger(__name__)

TYPE_ALIASES = {
    "stdio": (TransportType.STDIO, False),
    "http": (TransportType.HTTP, False),
    "streamable-http": (TransportType.HTTP, False),
    "sse": (TransportType.HTTP, True),
    "websocket": (TransportType.WEBSOCKET, False),
    "ws": (TransportType.WEBSOCKET, False),
}

URL_SCHEMES = {
    TransportType.HTTP: ("http", "https"),
    TransportType.WEBSOCKET: ("ws", "wss"),
}


@dataclass
class ValidationReport:
    """Outcome of validating a batch of raw configs."""
    configs: List[ServerConfig] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)
    repairs: Dict[str, List[str]] = field(default_factory=dict)
    errors: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.rejected


def _required_string(raw: Dict[str, Any], key: str, problems: List[str]) -> Optional[str]:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        problems.append(f"'{key}' must be a non-empty string")
        return None
    return value.strip()


def _string_map(raw: Dict[str, Any], key: str, repairs: List[str]) -> Dict[str, str]:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        repairs.append(f"'{key}' was {type(value).__name__}, reset to {{}}")
        return {}
    result = {}
    for k, v in value.items():
        if v is None:
            repairs.append(f"'{key}.{k}' was null, dropped")
            continue
        if not isinstance(v, str) or not isinstance(k, str):
            repairs.append(f"'{key}.{k}' coerced to string")
        result[str(k)] = v if isinstance(v, str) else str(v)
    return result


def _transport(raw: Dict[str, Any], problems: List[str]) -> Tuple[Optional[TransportType], bool]:
    declared = raw.get("type", raw.get("transport"))
    if isinstance(declared, TransportType):
        return declared, False
    if not isinstance(declared, str) or not declared:
        problems.append("'type' is required (stdio, http or websocket)")
        return None, False
    if declared.lower() not in TYPE_ALIASES:
        problems.append(f"unknown transport type '{declared}'")
        return None, False
    return TYPE_ALIASES[declared.lower()]


def _check_url(url: Optional[str], transport: TransportType, problems: List[str]) -> None:
    if url is None:
        return
    parts = urlsplit(url)
    allowed = URL_SCHEMES[transport]
    # `${VAR}` placeholders are expanded at connect time
    if url.startswith("${"):
        return
    if parts.scheme not in allowed:
        problems.append(f"'url' must use one of {', '.join(allowed)}, got '{url}'")
    elif not parts.netloc:
        problems.append(f"'url' has no host: '{url}'")


def check_server_config(raw: Any) -> Tuple[Optional[ServerConfig], List[str], List[str]]:
    """
    Validate and repair a single raw config record.

    Args:
        raw: Mapping in the persisted shape, or an existing ServerConfig

    Returns:
        (config or None, problems that excluded the entry, repairs applied)
    """
    if isinstance(raw, ServerConfig):
        raw = raw.to_dict()
    if not isinstance(raw, dict):
        return None, [f"config entry must be an object, got {type(raw).__name__}"], []

    problems: List[str] = []
    repairs: List[str] = []

    server_id = _required_string(raw, "id", problems)
    name = _required_string(raw, "name", problems)
    transport, sse = _transport(raw, problems)

    enabled = raw.get("enabled", True)
    if not isinstance(enabled, bool):
        repairs.append(f"'enabled' was {enabled!r}, coerced to true")
        enabled = True

    env = _string_map(raw, "env", repairs)
    values: Dict[str, Any] = {"id": server_id, "name": name, "enabled": enabled, "env": env}

    if transport is TransportType.STDIO:
        values["command"] = _required_string(raw, "command", problems)
        args = raw.get("args", [])
        if args is None:
            args = []
        if not isinstance(args, (list, tuple)):
            repairs.append(f"'args' was {type(args).__name__}, reset to []")
            args = []
        if any(not isinstance(arg, str) for arg in args):
            repairs.append("non-string 'args' items coerced to strings")
        values["args"] = tuple(arg if isinstance(arg, str) else str(arg) for arg in args)
        cwd = raw.get("cwd")
        if cwd is not None and not isinstance(cwd, str):
            repairs.append(f"'cwd' was {type(cwd).__name__}, dropped")
            cwd = None
        values["cwd"] = cwd or None
    elif transport is not None:
        url = _required_string(raw, "url", problems)
        _check_url(url, transport, problems)
        values["url"] = url
        values["headers"] = _string_map(raw, "headers", repairs)
        if transport is TransportType.HTTP:
            declared_sse = raw.get("sse", sse)
            if not isinstance(declared_sse, bool):
                repairs.append(f"'sse' was {declared_sse!r}, coerced to false")
                declared_sse = False
            values["sse"] = sse or declared_sse

    if problems:
        return None, problems, repairs
    return CONFIG_TYPES[transport](**values), problems, repairs


def validate_server_config(raw: Any) -> ServerConfig:
    """
    Validate a single config, repairing it where possible.

    Raises:
        ConfigError: If the entry cannot be admitted
    """
    config, problems, repairs = check_server_config(raw)
    if config is None:
        server_id = raw.get("id") if isinstance(raw, dict) else getattr(raw, "id", None)
        raise ConfigError(
            f"Invalid server config: {'; '.join(problems)}",
            server_id=server_id if isinstance(server_id, str) else None,
            problems=problems,
        )
    for repair in repairs:
        log.warning(f"[ConfigValidator] Repaired config '{config.id}': {repair}")
    return config


def repair_server_configs(raw: Union[Dict[str, Any], List[Any], Any]) -> ValidationReport:
    """
    Validate a whole batch of raw configs.

    Accepts a mapping keyed by server id or a list. Entries that fail are
    reported under their key (or `#index` for unnamed list entries); later
    duplicates of an id are rejected.
    """
    report = ValidationReport()

    if isinstance(raw, dict):
        entries = list(raw.items())
    elif isinstance(raw, list):
        entries = []
        for index, entry in enumerate(raw):
            key = entry.get("id") if isinstance(entry, dict) else None
            entries.append((key if isinstance(key, str) and key else f"#{index}", entry))
    else:
        log.error(f"[ConfigValidator] Expected an object or list of server configs, got {type(raw).__name__}")
        report.errors["<root>"] = [f"expected an object or list, got {type(raw).__name__}"]
        return report

    seen = set()
    for key, entry in entries:
        key = str(key)
        config, problems, repairs = check_server_config(entry)
        if config is not None and config.id in seen:
            problems = [f"duplicate server id '{config.id}'"]
            config = None

        if config is None:
            report.rejected.append(key)
            report.errors[key] = problems
            log.warning(f"[ConfigValidator] Quarantined config '{key}': {'; '.join(problems)}")
            continue

        if repairs:
            report.repairs[config.id] = repairs
            for repair in repairs:
                log.info(f"[ConfigValidator] Repaired config '{config.id}': {repair}")
        seen.add(config.id)
        report.configs.append(config)

    log.debug(f"[ConfigValidator] Accepted {len(report.configs)} configs, rejected {len(report.rejected)}")
    return report
