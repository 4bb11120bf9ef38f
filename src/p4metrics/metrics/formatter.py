"""Metric line formatting for the two output dialects.

Prometheus (live) format:
    # HELP p4_cmd_counter A count of completed p4 cmds (by cmd)
    # TYPE p4_cmd_counter gauge
    p4_cmd_counter{serverid="id",sdpinst="1",cmd="sync"} 5

Graphite (historical) format:
    p4_cmd_counter;serverid=id;sdpinst=1;cmd=sync 5 1700000000

Label values must be valid for node_exporter's textfile collector and for
the Graphite tag protocol, so free-form values are passed through
sanitize_label_value() before use.
"""

from __future__ import annotations

import io
import logging
import re
from abc import ABC, abstractmethod
from typing import Callable, NamedTuple

logger = logging.getLogger(__name__)

# Any character not in this set becomes "_". Excludes <space>;!="^' among others.
NOT_LABEL_VALUE_RE = re.compile(r"[^a-zA-Z0-9_/+:@{}&%<>*\\.,()\[\]-]")

BROKERED_SUFFIX = " (brokered)"


def sanitize_label_value(value: str) -> str:
    """Make a free-form string safe to use as a label value.

    Strips the " (brokered)" suffix added by p4broker and replaces any
    character outside the allowed set with an underscore.
    """
    value = value.replace(BROKERED_SUFFIX, "")
    return NOT_LABEL_VALUE_RE.sub("_", value)


def format_count(value: int) -> str:
    return f"{value:d}"


def format_seconds(value: float) -> str:
    return f"{value:.3f}"


def format_cpu_seconds(value: float) -> str:
    return f"{value:.6f}"


class Label(NamedTuple):
    """A metric label. Labels with an empty value are never emitted."""

    name: str
    value: str


class Dialect(ABC):
    """Renders metric headers and lines in one text syntax."""

    @abstractmethod
    def header(self, name: str, help_text: str, metric_type: str) -> str:
        """Text emitted once before the lines of a metric family."""
        ...

    @abstractmethod
    def format_labels(self, name: str, labels: list[Label]) -> str:
        """Metric name combined with its non-empty labels."""
        ...

    @abstractmethod
    def format_metric(self, name: str, labels: list[Label], value: str) -> str:
        """One complete metric line, including the trailing newline."""
        ...


class PrometheusDialect(Dialect):
    """Brace-labelled lines with HELP/TYPE headers."""

    def header(self, name: str, help_text: str, metric_type: str) -> str:
        return f"# HELP {name} {help_text}\n# TYPE {name} {metric_type}\n"

    def format_labels(self, name: str, labels: list[Label]) -> str:
        vals = [f'{label.name}="{label.value}"' for label in labels if label.value]
        return f"{name}{{{','.join(vals)}}}"

    def format_metric(self, name: str, labels: list[Label], value: str) -> str:
        return f"{self.format_labels(name, labels)} {value}\n"


class GraphiteDialect(Dialect):
    """Semicolon-tagged lines with a trailing unix timestamp and no headers.

    The timestamp is read from ``clock`` each time a line is formatted, so
    every line in a snapshot carries the time bucket current at flush.
    """

    def __init__(self, clock: Callable[[], int]):
        self.clock = clock

    def header(self, name: str, help_text: str, metric_type: str) -> str:
        return ""

    def format_labels(self, name: str, labels: list[Label]) -> str:
        vals = [f"{label.name}={label.value}" for label in labels if label.value]
        if vals:
            return f"{name};{';'.join(vals)}"
        return name

    def format_metric(self, name: str, labels: list[Label], value: str) -> str:
        return f"{self.format_labels(name, labels)} {value} {self.clock()}\n"


class MetricsWriter:
    """Accumulates one snapshot of metric text.

    Usage:
        writer = MetricsWriter(PrometheusDialect())
        writer.header("p4_cmd_counter", "A count of completed p4 cmds (by cmd)", "gauge")
        writer.metric("p4_cmd_counter", [Label("cmd", "sync")], "5")
        text = writer.getvalue()
    """

    def __init__(self, dialect: Dialect, debug_lines: bool = False):
        """Initialize the writer.

        Args:
            dialect: The output syntax.
            debug_lines: Log every metric line at debug level.
        """
        self.dialect = dialect
        self.debug_lines = debug_lines
        self._buf = io.StringIO()

    def header(self, name: str, help_text: str, metric_type: str) -> None:
        self._buf.write(self.dialect.header(name, help_text, metric_type))

    def metric(self, name: str, labels: list[Label], value: str) -> None:
        line = self.dialect.format_metric(name, labels, value)
        if self.debug_lines:
            logger.debug(line.rstrip("\n"))
        # node_exporter requires backslashes to be doubled
        self._buf.write(line.replace("\\", "\\\\"))

    def getvalue(self) -> str:
        return self._buf.getvalue()
