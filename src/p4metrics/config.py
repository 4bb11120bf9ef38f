"""Configuration parsing for p4metrics.

Parses .p4metrics/config.toml files for metrics and output settings.
"""

from __future__ import annotations

import logging
import re
import tomllib
from dataclasses import dataclass, field
from datetime import timedelta
from enum import IntFlag
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_UPDATE_INTERVAL = timedelta(seconds=60)

# Location of the server id file for an SDP instance
SERVER_ID_PATH = "/p4/{instance}/root/server.id"

_INTERVAL_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_INTERVAL_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, None: 1}


class DebugFlag(IntFlag):
    """Bit flags selecting extra debug logging."""

    NONE = 0
    METRIC_STATS = 1  # every rendered metric line
    COMMANDS = 2  # every command published to the aggregator
    LINES = 4  # every raw log line read


def parse_interval(value: Any) -> timedelta:
    """Parse an update interval.

    Accepts a number of seconds or a string such as "30s", "5m", "1h", "500ms".

    Args:
        value: The configured value.

    Returns:
        The interval as a timedelta.

    Raises:
        ValueError: If the value cannot be parsed or is not positive.
    """
    if isinstance(value, timedelta):
        interval = value
    elif isinstance(value, bool):
        raise ValueError(f"Invalid update_interval: {value!r}")
    elif isinstance(value, (int, float)):
        interval = timedelta(seconds=value)
    elif isinstance(value, str):
        match = _INTERVAL_RE.match(value)
        if not match:
            raise ValueError(f"Invalid update_interval: {value!r}")
        amount, unit = match.groups()
        interval = timedelta(seconds=float(amount) * _INTERVAL_UNITS[unit])
    else:
        raise ValueError(f"Invalid update_interval: {value!r}")

    if interval <= timedelta(0):
        raise ValueError(f"update_interval must be positive, got {value!r}")
    return interval


def read_server_id(instance: str, path_template: str = SERVER_ID_PATH) -> str:
    """Read the server id for an SDP instance.

    Args:
        instance: The SDP instance name.
        path_template: Location of the server.id file.

    Returns:
        The server id, or "" if the file does not exist or cannot be read.
    """
    if not instance:
        return ""
    id_file = Path(path_template.format(instance=instance))
    if not id_file.exists():
        return ""
    try:
        return id_file.read_text().strip()
    except OSError as e:
        logger.error(f"Failed to read {id_file} - {e}")
        return ""


@dataclass
class MetricsConfig:
    """Configuration for the metrics engine.

    Attributes:
        server_id: Server identity, emitted as the serverid label.
        sdp_instance: SDP instance, emitted as the sdpinst label.
        update_interval: Time between snapshots (wall clock in live mode,
            log time in historical mode).
        case_sensitive_server: If False, user names are lowercased.
        output_cmds_by_user: Emit per-user counts and totals.
        output_cmds_by_user_regex: Users matching this get per-(user, cmd) detail.
        output_cmds_by_ip: Emit per-IP counts and totals.
        historical: Select the historical (flat file) dialect and replay behavior.
        debug: Debug flags.
    """

    server_id: str = ""
    sdp_instance: str = ""
    update_interval: timedelta = DEFAULT_UPDATE_INTERVAL
    case_sensitive_server: bool = False
    output_cmds_by_user: bool = True
    output_cmds_by_user_regex: str = ""
    output_cmds_by_ip: bool = True
    historical: bool = False
    debug: DebugFlag = DebugFlag.NONE

    def __post_init__(self) -> None:
        if self.output_cmds_by_user_regex:
            try:
                re.compile(self.output_cmds_by_user_regex)
            except re.error as e:
                raise ValueError(
                    f"Invalid output_cmds_by_user_regex "
                    f"'{self.output_cmds_by_user_regex}': {e}"
                ) from e

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MetricsConfig:
        """Create a MetricsConfig from a dictionary.

        Args:
            data: Dictionary of [metrics] configuration values.

        Returns:
            A configured MetricsConfig instance.

        Raises:
            ValueError: If a value is invalid.
        """
        interval = data.get("update_interval")
        return cls(
            server_id=str(data.get("server_id", "")),
            sdp_instance=str(data.get("sdp_instance", "")),
            update_interval=(
                parse_interval(interval) if interval is not None else DEFAULT_UPDATE_INTERVAL
            ),
            case_sensitive_server=data.get("case_sensitive_server", False),
            output_cmds_by_user=data.get("output_cmds_by_user", True),
            output_cmds_by_user_regex=data.get("output_cmds_by_user_regex", ""),
            output_cmds_by_ip=data.get("output_cmds_by_ip", True),
            historical=data.get("historical", False),
            debug=DebugFlag(int(data.get("debug", 0))),
        )

    def is_debug(self, flag: DebugFlag) -> bool:
        """Check whether a debug flag is set."""
        return bool(self.debug & flag)


@dataclass
class OutputConfig:
    """Configuration for where results go."""

    metrics_output: str = "p4_cmds.prom"
    log_file: str = ""  # empty logs to stderr


@dataclass
class Config:
    """Main configuration container."""

    version: str = "1"
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    config_path: Path | None = None

    @classmethod
    def load(cls, path: Path | None = None) -> Config:
        """Load configuration from a file.

        Args:
            path: Path to config file. If None, searches for .p4metrics/config.toml
                  in current directory and parents.

        Returns:
            Loaded configuration.

        Raises:
            FileNotFoundError: If no config file found.
            ValueError: If config file is invalid.
        """
        if path is None:
            path = cls._find_config()

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "rb") as f:
            try:
                data = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ValueError(f"Invalid TOML in {path}: {e}") from e

        return cls._from_dict(data, path)

    @classmethod
    def load_or_default(cls, path: Path | None = None) -> Config:
        """Load configuration or return default if not found."""
        try:
            return cls.load(path)
        except FileNotFoundError:
            return cls()

    @classmethod
    def _find_config(cls) -> Path:
        """Find config file by searching current directory and parents."""
        cwd = Path.cwd()
        for parent in [cwd, *cwd.parents]:
            config_path = parent / ".p4metrics" / "config.toml"
            if config_path.exists():
                return config_path

        # Return expected path even if it doesn't exist
        return cwd / ".p4metrics" / "config.toml"

    @classmethod
    def _from_dict(cls, data: dict[str, Any], path: Path) -> Config:
        """Create a Config from a dictionary."""
        section = data.get("p4metrics", {})
        version = str(section.get("version", "1"))

        metrics = MetricsConfig.from_dict(data.get("metrics", {}))
        if not metrics.server_id:
            metrics.server_id = read_server_id(metrics.sdp_instance)

        output_data = data.get("output", {})
        output = OutputConfig(
            metrics_output=output_data.get("metrics_output", "p4_cmds.prom"),
            log_file=output_data.get("log_file", ""),
        )

        return cls(
            version=version,
            metrics=metrics,
            output=output,
            config_path=path,
        )

    def get_value(self, key_path: str) -> Any:
        """Get a configuration value by dot-separated path.

        Args:
            key_path: Dot-separated path to value (e.g. "metrics.server_id").

        Returns:
            The configuration value.

        Raises:
            KeyError: If path is invalid.
        """
        parts = key_path.split(".")
        current = self
        for part in parts:
            if hasattr(current, part):
                current = getattr(current, part)
            else:
                raise KeyError(f"Invalid config path: {key_path}")
        return current
