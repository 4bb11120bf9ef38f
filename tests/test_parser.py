"""Tests for the JSON command parser."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from p4metrics.channel import Channel
from p4metrics.parser import JsonCommandParser


class TestDecode:
    """Tests for decoding single lines."""

    def test_decodes_command(self):
        parser = JsonCommandParser()

        cmd = parser.decode('{"cmd": "user-sync", "user": "fred", "completedLapse": 1.5}\n')

        assert cmd is not None
        assert cmd.cmd == "user-sync"
        assert cmd.user == "fred"
        assert cmd.completed_lapse == 1.5

    def test_skips_non_commands(self):
        """Test that lines without a command decode to None."""
        parser = JsonCommandParser()

        assert parser.decode("") is None
        assert parser.decode("   ") is None
        assert parser.decode("\t2023/11/14 22:13:20 pid 101 fred@ws 10.0.0.1") is None
        assert parser.decode("[1, 2, 3]") is None
        assert parser.decode('{"user": "fred"}') is None
        assert parser.decode('{"cmd": ""}') is None

    def test_skips_log_time_prefix(self):
        """Test that a leading log time is not part of the JSON."""
        parser = JsonCommandParser()

        cmd = parser.decode('\t2023/11/14 22:13:20 {"cmd": "user-sync", "user": "fred"}')

        assert cmd is not None
        assert cmd.cmd == "user-sync"
        assert parser.decode("\t2023/11/14 22:13:20 ") is None


class TestParse:
    """Tests for the parsing task."""

    @pytest.mark.asyncio
    async def test_commands_closed_after_lines(self):
        """Test that every command is sent before the output closes."""
        parser = JsonCommandParser()
        lines: Channel[str] = Channel(10)
        commands = parser.parse(lines)

        await lines.put(json.dumps({"cmd": "user-sync"}))
        await lines.put("Perforce server info:")
        await lines.put(json.dumps({"cmd": "user-edit"}))
        lines.close()

        received = [cmd.cmd async for cmd in commands]
        await parser.task

        assert received == ["user-sync", "user-edit"]
        assert parser.lines_skipped == 1
        assert parser.pending_count() == 0

    @pytest.mark.asyncio
    async def test_follows_time_notifications(self):
        parser = JsonCommandParser()
        lines: Channel[str] = Channel(10)
        times: Channel[datetime] = Channel(10)
        commands = parser.parse(lines, times)
        notified = datetime(2023, 11, 14, 22, 13, 23, tzinfo=timezone.utc)

        await times.put(notified)
        await lines.put(json.dumps({"cmd": "user-sync"}))
        assert (await commands.get()).cmd == "user-sync"
        times.close()
        lines.close()
        await parser.task

        assert parser.latest_time == notified

    @pytest.mark.asyncio
    async def test_buffered_times_delivered_after_close(self):
        """Test that notifications still queued when times closes are not lost."""
        parser = JsonCommandParser()
        lines: Channel[str] = Channel(10)
        times: Channel[datetime] = Channel(10)
        commands = parser.parse(lines, times)
        first = datetime(2023, 11, 14, 22, 13, 23, tzinfo=timezone.utc)
        last = datetime(2023, 11, 14, 22, 14, 23, tzinfo=timezone.utc)

        await times.put(first)
        await times.put(last)
        times.close()
        lines.close()
        await parser.task

        assert parser.latest_time == last
        assert commands.closed
