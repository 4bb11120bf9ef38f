"""Dimensional aggregation of p4d commands into metric snapshots.

The aggregator keeps running totals of commands by several dimensions
(cmd, user, IP, replica, program, table, trigger) and renders them as a
snapshot of metric text on demand.

There are two classes of aggregate:

* counters ("*_counter", sync counts, lock and trigger totals, lines read,
  running) describe activity within the last update interval and are reset
  to zero after each live snapshot;
* cumulative totals ("*_cumulative_seconds", cmds processed) describe
  activity since the process started and are never reset.

In historical mode nothing is reset; the whole log is folded into one
running state and snapshots differ only in their timestamp.

Usage:
    aggregator = MetricsAggregator(config)
    for cmd in commands:
        aggregator.record(cmd)
    text = aggregator.snapshot()
"""

from __future__ import annotations

import logging
import re
from typing import Callable

import psutil

from p4metrics.command import Command
from p4metrics.config import DebugFlag, MetricsConfig
from p4metrics.metrics.formatter import (
    Dialect,
    GraphiteDialect,
    Label,
    MetricsWriter,
    PrometheusDialect,
    format_count,
    format_cpu_seconds,
    format_seconds,
    sanitize_label_value,
)

logger = logging.getLogger(__name__)


def split_ip(ip: str) -> tuple[str, str]:
    """Split "<replica>/<ip>" into (replica, ip).

    Only the first "/" separates; an address without a non-empty prefix
    has no replica.
    """
    i = ip.find("/")
    if i > 0:
        return ip[:i], ip[i + 1:]
    return "", ip


class MetricsAggregator:
    """Owns all aggregate state for one metrics engine.

    Not thread safe: record() and snapshot() must be called from a single
    task.
    """

    def __init__(
        self,
        config: MetricsConfig,
        pending_count: Callable[[], int] | None = None,
        clock: Callable[[], int] | None = None,
    ):
        """Initialize the aggregator with empty state.

        Args:
            config: The metrics configuration.
            pending_count: Returns the parser's count of incomplete commands.
            clock: Returns the unix timestamp for historical metric lines.
        """
        self.config = config
        self.historical = config.historical
        self._pending_count = pending_count or (lambda: 0)
        self.dialect: Dialect
        if self.historical:
            self.dialect = GraphiteDialect(clock or (lambda: 0))
        else:
            self.dialect = PrometheusDialect()

        self._user_detail_re: re.Pattern[str] | None = None
        if config.output_cmds_by_user_regex:
            self._user_detail_re = re.compile(f"({config.output_cmds_by_user_regex})")

        self._process = psutil.Process()

        # Counter class: reset after every live snapshot
        self.lines_read = 0
        self.cmd_running = 0
        self.sync_files_added = 0
        self.sync_files_updated = 0
        self.sync_files_deleted = 0
        self.sync_bytes_added = 0
        self.sync_bytes_updated = 0
        self.cmd_counter: dict[str, int] = {}
        self.cmd_error_counter: dict[str, int] = {}
        self.cmd_by_user_counter: dict[str, int] = {}
        self.cmd_by_ip_counter: dict[str, int] = {}
        self.cmd_by_replica_counter: dict[str, int] = {}
        self.cmd_by_program_counter: dict[str, int] = {}
        self.cmd_by_user_detail_counter: dict[str, dict[str, int]] = {}
        self.total_read_wait: dict[str, float] = {}
        self.total_read_held: dict[str, float] = {}
        self.total_write_wait: dict[str, float] = {}
        self.total_write_held: dict[str, float] = {}
        self.total_trigger_lapse: dict[str, float] = {}

        # Cumulative class: never reset
        self.cmds_processed = 0
        self.cmd_cumulative: dict[str, float] = {}
        self.cmd_ucpu_cumulative: dict[str, float] = {}
        self.cmd_scpu_cumulative: dict[str, float] = {}
        self.cmd_by_user_cumulative: dict[str, float] = {}
        self.cmd_by_ip_cumulative: dict[str, float] = {}
        self.cmd_by_replica_cumulative: dict[str, float] = {}
        self.cmd_by_program_cumulative: dict[str, float] = {}
        self.cmd_by_user_detail_cumulative: dict[str, dict[str, float]] = {}

    def record(self, cmd: Command) -> None:
        """Fold one completed command into the aggregates.

        Args:
            cmd: The command record.
        """
        name = cmd.cmd
        lapse = cmd.completed_lapse

        self.cmd_counter[name] = self.cmd_counter.get(name, 0) + 1
        self.cmd_cumulative[name] = self.cmd_cumulative.get(name, 0.0) + lapse
        self.cmd_ucpu_cumulative[name] = (
            self.cmd_ucpu_cumulative.get(name, 0.0) + cmd.ucpu / 1000
        )
        self.cmd_scpu_cumulative[name] = (
            self.cmd_scpu_cumulative.get(name, 0.0) + cmd.scpu / 1000
        )
        if cmd.cmd_error:
            self.cmd_error_counter[name] = self.cmd_error_counter.get(name, 0) + 1

        self.cmd_running = cmd.running
        self.sync_files_added += cmd.net_files_added
        self.sync_files_updated += cmd.net_files_updated
        self.sync_files_deleted += cmd.net_files_deleted
        self.sync_bytes_added += cmd.net_bytes_added
        self.sync_bytes_updated += cmd.net_bytes_updated

        user = cmd.user
        if not self.config.case_sensitive_server:
            user = user.lower()
        self.cmd_by_user_counter[user] = self.cmd_by_user_counter.get(user, 0) + 1
        self.cmd_by_user_cumulative[user] = (
            self.cmd_by_user_cumulative.get(user, 0.0) + lapse
        )
        if self._user_detail_re is not None and self._user_detail_re.search(user):
            if user not in self.cmd_by_user_detail_counter:
                self.cmd_by_user_detail_counter[user] = {}
                self.cmd_by_user_detail_cumulative[user] = {}
            detail_counter = self.cmd_by_user_detail_counter[user]
            detail_cumulative = self.cmd_by_user_detail_cumulative[user]
            detail_counter[name] = detail_counter.get(name, 0) + 1
            detail_cumulative[name] = detail_cumulative.get(name, 0.0) + lapse

        replica, ip = split_ip(cmd.ip)
        self.cmd_by_ip_counter[ip] = self.cmd_by_ip_counter.get(ip, 0) + 1
        self.cmd_by_ip_cumulative[ip] = self.cmd_by_ip_cumulative.get(ip, 0.0) + lapse
        if replica:
            self.cmd_by_replica_counter[replica] = (
                self.cmd_by_replica_counter.get(replica, 0) + 1
            )
            self.cmd_by_replica_cumulative[replica] = (
                self.cmd_by_replica_cumulative.get(replica, 0.0) + lapse
            )

        program = sanitize_label_value(cmd.app)
        self.cmd_by_program_counter[program] = (
            self.cmd_by_program_counter.get(program, 0) + 1
        )
        self.cmd_by_program_cumulative[program] = (
            self.cmd_by_program_cumulative.get(program, 0.0) + lapse
        )

        for table in cmd.tables:
            if table.is_trigger:
                trigger = table.trigger_name
                self.total_trigger_lapse[trigger] = (
                    self.total_trigger_lapse.get(trigger, 0.0) + table.trigger_lapse
                )
            else:
                t = table.table_name
                self.total_read_held[t] = (
                    self.total_read_held.get(t, 0.0) + table.total_read_held / 1000
                )
                self.total_read_wait[t] = (
                    self.total_read_wait.get(t, 0.0) + table.total_read_wait / 1000
                )
                self.total_write_held[t] = (
                    self.total_write_held.get(t, 0.0) + table.total_write_held / 1000
                )
                self.total_write_wait[t] = (
                    self.total_write_wait.get(t, 0.0) + table.total_write_wait / 1000
                )

    def reset_counters(self) -> None:
        """Zero all counter-class aggregates, keeping their keys.

        Cumulative totals and the processed count are left untouched.
        """
        self.lines_read = 0
        self.cmd_running = 0
        self.sync_files_added = 0
        self.sync_files_updated = 0
        self.sync_files_deleted = 0
        self.sync_bytes_added = 0
        self.sync_bytes_updated = 0
        for counts in (
            self.cmd_counter,
            self.cmd_error_counter,
            self.cmd_by_user_counter,
            self.cmd_by_ip_counter,
            self.cmd_by_replica_counter,
            self.cmd_by_program_counter,
        ):
            for key in counts:
                counts[key] = 0
        for user_counts in self.cmd_by_user_detail_counter.values():
            for key in user_counts:
                user_counts[key] = 0
        for totals in (
            self.total_read_wait,
            self.total_read_held,
            self.total_write_wait,
            self.total_write_held,
            self.total_trigger_lapse,
        ):
            for key in totals:
                totals[key] = 0.0

    def process_cpu(self) -> tuple[float, float]:
        """User and system CPU seconds used by this process."""
        times = self._process.cpu_times()
        return times.user, times.system

    def snapshot(self) -> str:
        """Render the current state as metric text.

        In live mode the counter-class aggregates are reset afterwards.

        Returns:
            The complete snapshot in the configured dialect.
        """
        text = self.render()
        if not self.historical:
            self.reset_counters()
        return text

    def render(self) -> str:
        """Render the current state without side effects."""
        debug_lines = self.config.is_debug(DebugFlag.METRIC_STATS)
        if debug_lines:
            logger.debug("Writing stats")
        writer = MetricsWriter(self.dialect, debug_lines=debug_lines)
        fixed = [
            Label("serverid", self.config.server_id),
            Label("sdpinst", self.config.sdp_instance),
        ]

        def single(name: str, help_text: str, metric_type: str, value: str) -> None:
            writer.header(name, help_text, metric_type)
            writer.metric(name, fixed, value)

        def by_label(
            name: str,
            help_text: str,
            label: str,
            values: dict,
            fmt: Callable,
        ) -> None:
            writer.header(name, help_text, "gauge")
            for key, value in values.items():
                writer.metric(name, [*fixed, Label(label, key)], fmt(value))

        def by_user_detail(name: str, help_text: str, values: dict, fmt: Callable) -> None:
            writer.header(name, help_text, "gauge")
            for user, per_cmd in values.items():
                for cmd, value in per_cmd.items():
                    writer.metric(
                        name,
                        [*fixed, Label("user", user), Label("cmd", cmd)],
                        fmt(value),
                    )

        single("p4_prom_log_lines_read", "A count of log lines read", "gauge",
               format_count(self.lines_read))
        single("p4_prom_cmds_processed", "A count of all cmds processed", "counter",
               format_count(self.cmds_processed))
        single("p4_prom_cmds_pending", "A count of all current cmds (not completed)",
               "gauge", format_count(self._pending_count()))
        single("p4_cmd_running", "The number of running commands at any one time",
               "gauge", format_count(self.cmd_running))

        user_cpu, system_cpu = self.process_cpu()
        single("p4_prom_cpu_user", "User CPU used by p4metrics", "counter",
               format_cpu_seconds(user_cpu))
        single("p4_prom_cpu_system", "System CPU used by p4metrics", "counter",
               format_cpu_seconds(system_cpu))

        single("p4_sync_files_added", "The number of files added to workspaces by syncs",
               "gauge", format_count(self.sync_files_added))
        single("p4_sync_files_updated",
               "The number of files updated in workspaces by syncs",
               "gauge", format_count(self.sync_files_updated))
        single("p4_sync_files_deleted",
               "The number of files deleted in workspaces by syncs",
               "gauge", format_count(self.sync_files_deleted))
        single("p4_sync_bytes_added", "The number of bytes added to workspaces by syncs",
               "gauge", format_count(self.sync_bytes_added))
        single("p4_sync_bytes_updated",
               "The number of bytes updated in workspaces by syncs",
               "gauge", format_count(self.sync_bytes_updated))

        by_label("p4_cmd_counter", "A count of completed p4 cmds (by cmd)",
                 "cmd", self.cmd_counter, format_count)
        by_label("p4_cmd_cumulative_seconds", "The total in seconds (by cmd)",
                 "cmd", self.cmd_cumulative, format_seconds)
        by_label("p4_cmd_cpu_user_cumulative_seconds",
                 "The total in user CPU seconds (by cmd)",
                 "cmd", self.cmd_ucpu_cumulative, format_seconds)
        by_label("p4_cmd_cpu_system_cumulative_seconds",
                 "The total in system CPU seconds (by cmd)",
                 "cmd", self.cmd_scpu_cumulative, format_seconds)
        by_label("p4_cmd_error_counter", "A count of cmd errors (by cmd)",
                 "cmd", self.cmd_error_counter, format_count)

        # Large sites may turn these off to limit cardinality
        if self.config.output_cmds_by_user:
            by_label("p4_cmd_user_counter", "A count of completed p4 cmds (by user)",
                     "user", self.cmd_by_user_counter, format_count)
            by_label("p4_cmd_user_cumulative_seconds", "The total in seconds (by user)",
                     "user", self.cmd_by_user_cumulative, format_seconds)
        if self.config.output_cmds_by_ip:
            by_label("p4_cmd_ip_counter", "A count of completed p4 cmds (by IP)",
                     "ip", self.cmd_by_ip_counter, format_count)
            by_label("p4_cmd_ip_cumulative_seconds", "The total in seconds (by IP)",
                     "ip", self.cmd_by_ip_cumulative, format_seconds)
        if self._user_detail_re is not None:
            by_user_detail("p4_cmd_user_detail_counter",
                           "A count of completed p4 cmds (by user and cmd)",
                           self.cmd_by_user_detail_counter, format_count)
            by_user_detail("p4_cmd_user_detail_cumulative_seconds",
                           "The total in seconds (by user and cmd)",
                           self.cmd_by_user_detail_cumulative, format_seconds)

        by_label("p4_cmd_replica_counter",
                 "A count of completed p4 cmds (by broker/replica/proxy)",
                 "replica", self.cmd_by_replica_counter, format_count)
        by_label("p4_cmd_replica_cumulative_seconds",
                 "The total in seconds (by broker/replica/proxy)",
                 "replica", self.cmd_by_replica_cumulative, format_seconds)
        by_label("p4_cmd_program_counter", "A count of completed p4 cmds (by program)",
                 "program", self.cmd_by_program_counter, format_count)
        by_label("p4_cmd_program_cumulative_seconds", "The total in seconds (by program)",
                 "program", self.cmd_by_program_cumulative, format_seconds)

        by_label("p4_total_read_wait_seconds",
                 "The total waiting for read locks in seconds (by table)",
                 "table", self.total_read_wait, format_seconds)
        by_label("p4_total_read_held_seconds",
                 "The total read locks held in seconds (by table)",
                 "table", self.total_read_held, format_seconds)
        by_label("p4_total_write_wait_seconds",
                 "The total waiting for write locks in seconds (by table)",
                 "table", self.total_write_wait, format_seconds)
        by_label("p4_total_write_held_seconds",
                 "The total write locks held in seconds (by table)",
                 "table", self.total_write_held, format_seconds)
        if self.total_trigger_lapse:
            by_label("p4_total_trigger_lapse_seconds",
                     "The total lapse time for triggers in seconds (by trigger)",
                     "trigger", self.total_trigger_lapse, format_seconds)

        return writer.getvalue()
