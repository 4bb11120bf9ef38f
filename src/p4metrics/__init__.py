"""p4metrics - Command metrics for Perforce (p4d) servers.

p4metrics turns a stream of completed p4d command records into periodic
metric snapshots: Prometheus textfile format for live monitoring, or
Graphite-style timestamped lines when replaying a historical log.
"""

__version__ = "0.1.0"

from p4metrics.command import Command, TableUse
from p4metrics.config import Config, DebugFlag, MetricsConfig, OutputConfig

__all__ = [
    "Command",
    "TableUse",
    "Config",
    "DebugFlag",
    "MetricsConfig",
    "OutputConfig",
]
