"""
MCP Server Config Persistence

Loads and saves the validated server config set as JSON, and reads the
`mcp.json` format shared with other MCP clients.
"""

import json
import logging
import os
import pathlib
import tempfile
from typing import Iterable, Union

from toolwire.utils.errors import ConfigError

from .config import ServerConfig, mcp_json_to_raw_configs
from .validation import ValidationReport, repair_server_configs

log = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]


class ConfigStore:
    """JSON file holding server configs keyed by id."""

    def __init__(self, path: PathLike):
        self.path = pathlib.Path(path)

    def load(self) -> ValidationReport:
        """
        Read and validate the stored configs.

        A missing file yields an empty report. A file that is not valid JSON,
        or not an object keyed by id, is moved aside to `<name>.corrupt` so the
        next save does not destroy it, and an empty report is returned.
        """
        if not self.path.exists():
            log.debug(f"[ConfigStore] No config store at {self.path}")
            return ValidationReport()

        try:
            with self.path.open(encoding="utf-8") as f_in:
                data = json.load(f_in)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            return self._quarantine(f"not valid JSON: {e}")

        if not isinstance(data, dict):
            return self._quarantine(f"expected an object keyed by server id, got {type(data).__name__}")

        report = repair_server_configs(data)
        log.info(
            f"[ConfigStore] Loaded {len(report.configs)} server configs from {self.path}"
            + (f", quarantined {report.rejected}" if report.rejected else "")
        )
        return report

    def _quarantine(self, reason: str) -> ValidationReport:
        backup = self.path.with_name(self.path.name + ".corrupt")
        log.error(f"[ConfigStore] Config store {self.path} is corrupted ({reason}); moving it to {backup}")
        try:
            os.replace(self.path, backup)
        except OSError as e:
            log.warning(f"[ConfigStore] Could not move corrupted store aside: {e}")
        report = ValidationReport()
        report.errors[str(self.path)] = [reason]
        return report

    def save(self, configs: Iterable[ServerConfig]) -> None:
        """Write configs atomically.

        Raises:
            ConfigError: If the file cannot be written
        """
        data = {config.id: config.to_dict() for config in configs}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=self.path.name, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f_out:
                    json.dump(data, f_out, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                pathlib.Path(tmp_path).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise ConfigError(f"Failed to save server configs to {self.path}: {e}") from e
        log.debug(f"[ConfigStore] Saved {len(data)} server configs to {self.path}")


def load_mcp_json(paths: Iterable[PathLike]) -> ValidationReport:
    """
    Read every existing `mcp.json`-style file in order and merge the results.

    The first file to define a server id wins. Unreadable files are logged and
    skipped.
    """
    merged = ValidationReport()
    seen = set()

    for path in paths:
        path = pathlib.Path(path)
        if not path.exists():
            continue
        try:
            with path.open(encoding="utf-8") as f_in:
                raw_configs = mcp_json_to_raw_configs(json.load(f_in))
        except (json.JSONDecodeError, UnicodeDecodeError, ConfigError) as e:
            log.error(f"[ConfigStore] Ignoring invalid MCP config file {path}: {getattr(e, 'message', e)}")
            merged.errors[str(path)] = [str(getattr(e, "message", e))]
            continue

        report = repair_server_configs(raw_configs)
        for config in report.configs:
            if config.id in seen:
                log.debug(f"[ConfigStore] {path} redefines '{config.id}', keeping the earlier definition")
                continue
            seen.add(config.id)
            merged.configs.append(config)
        merged.rejected.extend(report.rejected)
        merged.repairs.update(report.repairs)
        merged.errors.update(report.errors)
        log.info(f"[ConfigStore] Loaded {len(report.configs)} servers from {path}")

    return merged
