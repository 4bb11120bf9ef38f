"""Interface to the log parser that turns raw lines into commands.

The metrics pipeline forwards every raw line to a CommandParser and
consumes the commands it produces. Parsing p4d log grammar is the parser's
job, not the pipeline's; JsonCommandParser is provided for streams where
each line already holds one command encoded as JSON.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Protocol

from p4metrics.channel import Channel
from p4metrics.command import LOG_TIME_RE, Command

logger = logging.getLogger(__name__)

DEFAULT_COMMANDS_CAPACITY = 10000


class CommandParser(Protocol):
    """A parser collaborator."""

    def parse(
        self, lines: Channel[str], times: Channel[datetime] | None = None
    ) -> Channel[Command]:
        """Start parsing lines.

        Must be called from a running event loop. The returned channel is
        closed once ``lines`` is closed and every command has been sent.

        Args:
            lines: Raw log lines.
            times: Log time notifications, used to complete pending commands
                whose end record has not arrived. The sender closes it no
                later than ``lines``; notifications buffered at close are
                still delivered.

        Returns:
            The channel of completed commands.
        """
        ...

    def pending_count(self) -> int:
        """Number of commands started but not yet completed."""
        ...


class JsonCommandParser:
    """Parses one JSON-encoded command per line.

    Lines that are blank or not a JSON object are skipped.
    """

    def __init__(self, capacity: int = DEFAULT_COMMANDS_CAPACITY):
        """Initialize the parser.

        Args:
            capacity: Capacity of the output command channel.
        """
        self.capacity = capacity
        self.latest_time: datetime | None = None
        self.lines_skipped = 0
        self.task: asyncio.Task | None = None

    def parse(
        self, lines: Channel[str], times: Channel[datetime] | None = None
    ) -> Channel[Command]:
        commands: Channel[Command] = Channel(self.capacity, name="commands")
        self.task = asyncio.create_task(self._run(lines, times, commands))
        return commands

    def pending_count(self) -> int:
        return 0

    def decode(self, line: str) -> Command | None:
        """Decode one line into a Command.

        A leading "\\tYYYY/MM/DD HH:MM:SS " log time, as written by
        write_commands(), is skipped before decoding.

        Args:
            line: A line of text.

        Returns:
            The Command, or None if the line does not hold a command.
        """
        line = line.strip()
        match = LOG_TIME_RE.match(line)
        if match:
            line = line[match.end():].lstrip()
        if not line:
            return None
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug(f"Skipping non-JSON line: {line[:80]}")
            return None
        if not isinstance(data, dict) or not data.get("cmd"):
            logger.debug(f"Skipping line without a command: {line[:80]}")
            return None
        return Command.from_dict(data)

    def on_log_time(self, dt: datetime) -> None:
        """Called for each log time notification."""
        self.latest_time = dt

    async def _run(
        self,
        lines: Channel[str],
        times: Channel[datetime] | None,
        commands: Channel[Command],
    ) -> None:
        time_task = None
        if times is not None:
            time_task = asyncio.create_task(self._follow_times(times))
        try:
            async for line in lines:
                cmd = self.decode(line)
                if cmd is None:
                    self.lines_skipped += 1
                    continue
                await commands.put(cmd)
        finally:
            if time_task is not None:
                # A closed times channel still holds notifications to deliver
                if times.closed:
                    await time_task
                else:
                    time_task.cancel()
            commands.close()

    async def _follow_times(self, times: Channel[datetime]) -> None:
        # Nothing is ever pending, but the channel must be drained so the
        # sender never blocks on it.
        async for dt in times:
            self.on_log_time(dt)
