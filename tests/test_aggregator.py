"""Tests for dimensional metric aggregation."""

from __future__ import annotations

import re

import pytest

from p4metrics.command import Command, TableUse
from p4metrics.config import MetricsConfig
from p4metrics.metrics.aggregator import MetricsAggregator, split_ip


def make_command(
    cmd: str = "user-sync",
    user: str = "fred",
    ip: str = "10.0.0.1",
    app: str = "p4/2023.1",
    lapse: float = 1.0,
    **kwargs,
) -> Command:
    """Create a test command record."""
    return Command(cmd=cmd, user=user, ip=ip, app=app, completed_lapse=lapse, **kwargs)


def metric_lines(text: str, name: str) -> list[str]:
    """Return the sample lines of one metric family."""
    return [line for line in text.splitlines() if re.match(rf"{name}[{{; ]", line)]


@pytest.fixture
def aggregator() -> MetricsAggregator:
    return MetricsAggregator(MetricsConfig(server_id="master.1", sdp_instance="1"))


class TestSplitIp:
    """Tests for replica prefix handling."""

    def test_plain_address(self):
        assert split_ip("10.0.0.1") == ("", "10.0.0.1")

    def test_replica_prefix(self):
        assert split_ip("edge1/10.0.0.1") == ("edge1", "10.0.0.1")

    def test_only_first_slash_splits(self):
        assert split_ip("proxy/edge1/10.0.0.1") == ("proxy", "edge1/10.0.0.1")

    def test_leading_slash_is_not_a_replica(self):
        assert split_ip("/10.0.0.1") == ("", "/10.0.0.1")


class TestRecord:
    """Tests for folding commands into aggregates."""

    def test_counts_and_totals_by_cmd(self, aggregator):
        """Test per-command counts and lapse totals."""
        aggregator.record(make_command("user-sync", lapse=1.5))
        aggregator.record(make_command("user-sync", lapse=0.5))
        aggregator.record(make_command("user-edit", lapse=0.25))

        assert aggregator.cmd_counter == {"user-sync": 2, "user-edit": 1}
        assert aggregator.cmd_cumulative == {"user-sync": 2.0, "user-edit": 0.25}

    def test_cpu_converted_to_seconds(self, aggregator):
        aggregator.record(make_command(ucpu=1500, scpu=250))

        assert aggregator.cmd_ucpu_cumulative["user-sync"] == pytest.approx(1.5)
        assert aggregator.cmd_scpu_cumulative["user-sync"] == pytest.approx(0.25)

    def test_errors_counted(self, aggregator):
        aggregator.record(make_command(cmd_error=True))
        aggregator.record(make_command())

        assert aggregator.cmd_error_counter == {"user-sync": 1}

    def test_sync_totals_and_running(self, aggregator):
        """Test sync file/byte totals and the latest running count."""
        aggregator.record(make_command(running=5, net_files_added=3, net_bytes_added=100))
        aggregator.record(make_command(running=2, net_files_updated=1, net_bytes_updated=50))

        assert aggregator.cmd_running == 2
        assert aggregator.sync_files_added == 3
        assert aggregator.sync_files_updated == 1
        assert aggregator.sync_bytes_added == 100
        assert aggregator.sync_bytes_updated == 50

    def test_users_lowercased_by_default(self, aggregator):
        aggregator.record(make_command(user="Fred"))
        aggregator.record(make_command(user="fred"))

        assert aggregator.cmd_by_user_counter == {"fred": 2}

    def test_case_sensitive_users(self):
        aggregator = MetricsAggregator(MetricsConfig(case_sensitive_server=True))
        aggregator.record(make_command(user="Fred"))
        aggregator.record(make_command(user="fred"))

        assert aggregator.cmd_by_user_counter == {"Fred": 1, "fred": 1}

    def test_replica_split_from_ip(self, aggregator):
        """Test that a replica prefix is counted separately from the address."""
        aggregator.record(make_command(ip="edge1/10.0.0.5", lapse=2.0))
        aggregator.record(make_command(ip="10.0.0.5", lapse=1.0))

        assert aggregator.cmd_by_ip_counter == {"10.0.0.5": 2}
        assert aggregator.cmd_by_ip_cumulative == {"10.0.0.5": 3.0}
        assert aggregator.cmd_by_replica_counter == {"edge1": 1}
        assert aggregator.cmd_by_replica_cumulative == {"edge1": 2.0}

    def test_program_sanitized(self, aggregator):
        aggregator.record(make_command(app="P4V 2023.1 (brokered)"))

        assert aggregator.cmd_by_program_counter == {"P4V_2023.1": 1}

    def test_table_locks_converted_to_seconds(self, aggregator):
        aggregator.record(make_command(tables=[
            TableUse("db.rev", total_read_wait=100, total_read_held=2000,
                     total_write_wait=5, total_write_held=1500),
        ]))

        assert aggregator.total_read_wait == {"db.rev": pytest.approx(0.1)}
        assert aggregator.total_read_held == {"db.rev": pytest.approx(2.0)}
        assert aggregator.total_write_wait == {"db.rev": pytest.approx(0.005)}
        assert aggregator.total_write_held == {"db.rev": pytest.approx(1.5)}

    def test_trigger_only_contributes_trigger_lapse(self, aggregator):
        """Test that trigger entries never count as table locks."""
        aggregator.record(make_command(tables=[
            TableUse("trigger_swarm.changesave", trigger_lapse=0.5),
        ]))

        assert aggregator.total_trigger_lapse == {"swarm.changesave": 0.5}
        assert aggregator.total_read_wait == {}
        assert aggregator.total_write_held == {}

    def test_user_detail_only_for_matching_users(self):
        aggregator = MetricsAggregator(
            MetricsConfig(output_cmds_by_user_regex="svc_")
        )
        aggregator.record(make_command("user-sync", user="svc_build"))
        aggregator.record(make_command("user-sync", user="svc_build"))
        aggregator.record(make_command("user-edit", user="fred"))

        assert aggregator.cmd_by_user_detail_counter == {"svc_build": {"user-sync": 2}}
        assert aggregator.cmd_by_user_detail_cumulative == {"svc_build": {"user-sync": 2.0}}


class TestReset:
    """Tests for counter reset after a live snapshot."""

    def test_counters_zeroed_keys_kept(self, aggregator):
        """Test that counters reset to zero but their series remain."""
        aggregator.lines_read = 10
        aggregator.record(make_command(cmd_error=True, running=3, net_files_added=4,
                                       tables=[TableUse("db.rev", total_read_held=10),
                                               TableUse("trigger_t1", trigger_lapse=1.0)]))

        aggregator.snapshot()

        assert aggregator.lines_read == 0
        assert aggregator.cmd_running == 0
        assert aggregator.sync_files_added == 0
        assert aggregator.cmd_counter == {"user-sync": 0}
        assert aggregator.cmd_error_counter == {"user-sync": 0}
        assert aggregator.cmd_by_user_counter == {"fred": 0}
        assert aggregator.total_read_held == {"db.rev": 0.0}
        assert aggregator.total_trigger_lapse == {"t1": 0.0}

        text = aggregator.render()
        assert 'p4_cmd_counter{serverid="master.1",sdpinst="1",cmd="user-sync"} 0' in text

    def test_cumulatives_never_reset(self, aggregator):
        """Test that cumulative totals only grow across snapshots."""
        aggregator.cmds_processed = 1
        aggregator.record(make_command(lapse=1.5))
        aggregator.snapshot()
        first = dict(aggregator.cmd_cumulative)

        aggregator.cmds_processed += 1
        aggregator.record(make_command(lapse=0.5))
        aggregator.snapshot()

        assert aggregator.cmds_processed == 2
        assert first == {"user-sync": 1.5}
        assert aggregator.cmd_cumulative == {"user-sync": 2.0}
        assert aggregator.cmd_by_user_cumulative == {"fred": 2.0}

    def test_historical_never_resets(self):
        aggregator = MetricsAggregator(MetricsConfig(historical=True))
        aggregator.lines_read = 7
        aggregator.record(make_command())

        aggregator.snapshot()

        assert aggregator.lines_read == 7
        assert aggregator.cmd_counter == {"user-sync": 1}


class TestRender:
    """Tests for snapshot rendering."""

    def test_live_snapshot(self, aggregator):
        """Test Prometheus output with fixed labels and headers."""
        aggregator.lines_read = 12
        aggregator.cmds_processed = 1
        aggregator.record(make_command(ip="edge1/10.0.0.1", lapse=2.5))

        text = aggregator.render()

        assert text.startswith(
            "# HELP p4_prom_log_lines_read A count of log lines read\n"
            "# TYPE p4_prom_log_lines_read gauge\n"
            'p4_prom_log_lines_read{serverid="master.1",sdpinst="1"} 12\n'
        )
        assert "# TYPE p4_prom_cmds_processed counter\n" in text
        assert 'p4_cmd_counter{serverid="master.1",sdpinst="1",cmd="user-sync"} 1\n' in text
        assert (
            'p4_cmd_cumulative_seconds{serverid="master.1",sdpinst="1",cmd="user-sync"} 2.500\n'
            in text
        )
        assert 'p4_cmd_replica_counter{serverid="master.1",sdpinst="1",replica="edge1"} 1\n' in text
        assert 'p4_cmd_ip_counter{serverid="master.1",sdpinst="1",ip="10.0.0.1"} 1\n' in text

    def test_process_cpu_lines(self, aggregator):
        text = aggregator.render()

        for name in ("p4_prom_cpu_user", "p4_prom_cpu_system"):
            [line] = metric_lines(text, name)
            assert re.fullmatch(rf'{name}\{{serverid="master.1",sdpinst="1"\}} \d+\.\d{{6}}', line)

    def test_pending_count_from_parser(self):
        aggregator = MetricsAggregator(MetricsConfig(), pending_count=lambda: 4)

        assert metric_lines(aggregator.render(), "p4_prom_cmds_pending") == [
            "p4_prom_cmds_pending{} 4"
        ]

    def test_family_order(self, aggregator):
        """Test that metric families are written in a stable order."""
        aggregator.record(make_command(tables=[TableUse("db.rev", total_read_held=1)]))
        text = aggregator.render()

        names = re.findall(r"^# TYPE (\S+)", text, re.MULTILINE)
        assert names[:6] == [
            "p4_prom_log_lines_read",
            "p4_prom_cmds_processed",
            "p4_prom_cmds_pending",
            "p4_cmd_running",
            "p4_prom_cpu_user",
            "p4_prom_cpu_system",
        ]
        assert names.index("p4_cmd_counter") < names.index("p4_cmd_user_counter")
        assert names[-1] == "p4_total_write_held_seconds"

    def test_trigger_family_only_when_present(self, aggregator):
        aggregator.record(make_command())
        assert "p4_total_trigger_lapse_seconds" not in aggregator.render()

        aggregator.record(make_command(tables=[TableUse("trigger_t1", trigger_lapse=0.5)]))
        text = aggregator.render()

        assert metric_lines(text, "p4_total_trigger_lapse_seconds") == [
            'p4_total_trigger_lapse_seconds{serverid="master.1",sdpinst="1",trigger="t1"} 0.500'
        ]

    def test_user_and_ip_families_can_be_disabled(self):
        aggregator = MetricsAggregator(
            MetricsConfig(output_cmds_by_user=False, output_cmds_by_ip=False)
        )
        aggregator.record(make_command())

        text = aggregator.render()

        assert "p4_cmd_user_counter" not in text
        assert "p4_cmd_user_cumulative_seconds" not in text
        assert "p4_cmd_ip_counter" not in text
        assert "p4_cmd_counter{" in text

    def test_user_detail_family(self):
        aggregator = MetricsAggregator(MetricsConfig(output_cmds_by_user_regex="svc_"))
        aggregator.record(make_command("user-sync", user="svc_build", lapse=1.0))

        text = aggregator.render()

        assert metric_lines(text, "p4_cmd_user_detail_counter") == [
            'p4_cmd_user_detail_counter{user="svc_build",cmd="user-sync"} 1'
        ]
        assert metric_lines(text, "p4_cmd_user_detail_cumulative_seconds") == [
            'p4_cmd_user_detail_cumulative_seconds{user="svc_build",cmd="user-sync"} 1.000'
        ]

    def test_historical_snapshot(self):
        """Test Graphite output carries the clock timestamp and no headers."""
        aggregator = MetricsAggregator(
            MetricsConfig(historical=True), clock=lambda: 1700000000
        )
        for _ in range(5):
            aggregator.record(make_command("sync"))

        text = aggregator.snapshot()

        assert "#" not in text
        assert "p4_cmd_counter;cmd=sync 5 1700000000\n" in text
        assert "p4_prom_log_lines_read 0 1700000000\n" in text
        for line in text.splitlines():
            assert line.endswith(" 1700000000")
