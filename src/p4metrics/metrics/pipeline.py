"""Event loop driving the metrics engine.

The pipeline multiplexes four sources in a single task:

    cancel event ----------------------------+
    ticker (live mode only) -----------------+--> MetricsPipeline loop
    commands <- parser <- forwarded lines <--+        |
    raw lines -------------------------------+        v
                                              metrics channel (snapshots)
                                              commands channel (optional)

All aggregate state is owned by the loop task, so no locking is needed.
Snapshots are emitted when the ticker fires (live), when the log time
crosses a bucket boundary (historical), and once more when the parser's
command channel closes. Cancellation stops the loop without a final
snapshot.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import NamedTuple

from p4metrics.channel import Channel, ChannelClosed
from p4metrics.command import Command
from p4metrics.config import DebugFlag, MetricsConfig
from p4metrics.metrics.aggregator import MetricsAggregator
from p4metrics.metrics.boundary import BoundaryDetector
from p4metrics.parser import CommandParser

logger = logging.getLogger(__name__)

FORWARD_LINES_CAPACITY = 10000
TIMES_CAPACITY = 1000
METRICS_CAPACITY = 1000
COMMANDS_OUT_CAPACITY = 10000


class PipelineState(Enum):
    """Lifecycle of the pipeline loop."""

    RUNNING = "running"
    DRAINING = "draining"  # raw lines closed, waiting for the parser to finish
    TERMINATED = "terminated"


class PipelineOutputs(NamedTuple):
    """Channels produced by the pipeline.

    Attributes:
        commands: Every aggregated command, or None if not requested.
        metrics: Snapshot text blobs.
    """

    commands: Channel[Command] | None
    metrics: Channel[str]


class Ticker:
    """Fires at a fixed rate; ticks missed while busy are dropped."""

    def __init__(self, interval: timedelta):
        self.interval = interval.total_seconds()
        self._next: float | None = None

    async def wait(self) -> None:
        """Sleep until the next tick."""
        loop = asyncio.get_running_loop()
        if self._next is None:
            self._next = loop.time() + self.interval
        await asyncio.sleep(max(0.0, self._next - loop.time()))
        now = loop.time()
        self._next += self.interval
        if self._next <= now:
            # Drop ticks missed while the receiver was busy
            self._next = now + self.interval


class MetricsPipeline:
    """Reads log lines and emits metric snapshots.

    Usage:
        pipeline = MetricsPipeline(config, JsonCommandParser())
        outputs = pipeline.process_events(lines)
        async for snapshot in outputs.metrics:
            sink.write(snapshot)
    """

    def __init__(self, config: MetricsConfig, parser: CommandParser):
        """Initialize the pipeline.

        Args:
            config: The metrics configuration.
            parser: The parser collaborator fed with raw lines.
        """
        self.config = config
        self.parser = parser
        self.historical = config.historical
        self.detector = BoundaryDetector(config.update_interval)
        self.aggregator = MetricsAggregator(
            config,
            pending_count=parser.pending_count,
            clock=lambda: self.detector.timestamp,
        )
        self.state = PipelineState.RUNNING
        self.task: asyncio.Task | None = None
        self.snapshots_emitted = 0

        self._lines: Channel[str] | None = None
        self._forward: Channel[str] | None = None
        self._times: Channel[datetime] | None = None
        self._commands_in: Channel[Command] | None = None
        self._commands_out: Channel[Command] | None = None
        self._metrics: Channel[str] | None = None
        self._cancel: asyncio.Event | None = None
        self._ticker: Ticker | None = None

    def process_events(
        self,
        lines: Channel[str],
        cancel: asyncio.Event | None = None,
        need_cmd_channel: bool = False,
    ) -> PipelineOutputs:
        """Start the event loop task.

        Must be called from a running event loop, and only once.

        Args:
            lines: Raw log lines; closing it starts a graceful shutdown.
            cancel: When set, the loop stops immediately without flushing.
            need_cmd_channel: Also pass every aggregated command through.

        Returns:
            The output channels; both are closed when the loop ends.
        """
        if self.task is not None:
            raise RuntimeError("process_events() already called")

        self._lines = lines
        self._cancel = cancel
        self._forward = Channel(FORWARD_LINES_CAPACITY, name="forward-lines")
        if self.historical:
            self._times = Channel(TIMES_CAPACITY, name="log-times")
        else:
            self._ticker = Ticker(self.config.update_interval)
        self._metrics = Channel(METRICS_CAPACITY, name="metrics")
        if need_cmd_channel:
            self._commands_out = Channel(COMMANDS_OUT_CAPACITY, name="commands-out")

        self._commands_in = self.parser.parse(self._forward, self._times)
        self.task = asyncio.create_task(self._run())
        return PipelineOutputs(self._commands_out, self._metrics)

    async def wait(self) -> None:
        """Wait for the loop task to end."""
        if self.task is not None:
            await self.task

    def _close_parser_inputs(self) -> None:
        self._forward.close()
        if self._times is not None:
            self._times.close()

    async def _emit_snapshot(self) -> None:
        await self._metrics.put(self.aggregator.snapshot())
        self.snapshots_emitted += 1

    async def _run(self) -> None:
        waiters: dict[str, asyncio.Task] = {
            "commands": asyncio.create_task(self._commands_in.get()),
            "lines": asyncio.create_task(self._lines.get()),
        }
        if self._cancel is not None:
            waiters["cancel"] = asyncio.create_task(self._cancel.wait())
        if self._ticker is not None:
            waiters["tick"] = asyncio.create_task(self._ticker.wait())

        try:
            while self.state is not PipelineState.TERMINATED:
                done, _ = await asyncio.wait(
                    waiters.values(), return_when=asyncio.FIRST_COMPLETED
                )
                for source in ("cancel", "tick", "commands", "lines"):
                    task = waiters.get(source)
                    if task is None or task not in done:
                        continue
                    del waiters[source]
                    await self._handle(source, task, waiters)
                    if self.state is PipelineState.TERMINATED:
                        break
        finally:
            for task in waiters.values():
                task.cancel()
            self.state = PipelineState.TERMINATED
            # Let the parser finish if the loop stopped before lines closed
            if not self._forward.closed:
                self._close_parser_inputs()
            self._metrics.close()
            if self._commands_out is not None:
                self._commands_out.close()

    async def _handle(
        self, source: str, task: asyncio.Task, waiters: dict[str, asyncio.Task]
    ) -> None:
        if source == "cancel":
            logger.info("Done received")
            self.state = PipelineState.TERMINATED
            return

        if source == "tick":
            if self.config.is_debug(DebugFlag.METRIC_STATS):
                logger.debug("Tick: publishing snapshot")
            if not self.historical:
                await self._emit_snapshot()
            waiters["tick"] = asyncio.create_task(self._ticker.wait())
            return

        if source == "commands":
            try:
                cmd = task.result()
            except ChannelClosed:
                logger.debug("Parser commands closed")
                await self._emit_snapshot()
                self.state = PipelineState.TERMINATED
                return
            if self.config.is_debug(DebugFlag.COMMANDS):
                logger.debug(f"Publishing cmd: {cmd.cmd} user={cmd.user} pid={cmd.pid}")
            self.aggregator.cmds_processed += 1
            self.aggregator.record(cmd)
            if self._commands_out is not None:
                await self._commands_out.put(cmd)
            waiters["commands"] = asyncio.create_task(self._commands_in.get())
            return

        try:
            line = task.result()
        except ChannelClosed:
            logger.debug("Lines closed")
            self._close_parser_inputs()
            self.state = PipelineState.DRAINING
            return
        if self.config.is_debug(DebugFlag.LINES):
            logger.debug(f"Line: {line}")
        self.aggregator.lines_read += 1
        await self._forward.put(line)
        if self.historical:
            boundary = self.detector.check(line)
            if boundary.notify_time is not None:
                await self._times.put(boundary.notify_time)
            if boundary.update_required:
                await self._emit_snapshot()
        waiters["lines"] = asyncio.create_task(self._lines.get())
