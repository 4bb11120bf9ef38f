"""Output sinks for metric snapshots and command records."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import TextIO

from p4metrics.channel import Channel
from p4metrics.command import Command

logger = logging.getLogger(__name__)

# node_exporter's textfile collector runs as a different user
TEXTFILE_MODE = 0o644


class TextfileSink:
    """Writes metric snapshots to a file.

    In replace mode (live) each snapshot atomically replaces the file, so a
    scraper never sees a partial write. In append mode (historical) every
    snapshot is appended, giving a file that can be bulk loaded.
    """

    def __init__(self, path: Path, append: bool = False):
        """Initialize the sink.

        Args:
            path: Output file.
            append: Append snapshots instead of replacing the file.
        """
        self.path = Path(path)
        self.append = append
        self.writes = 0
        self.errors = 0

    def write(self, snapshot: str) -> bool:
        """Write one snapshot.

        Errors are logged rather than raised so that a full disk does not
        stop metric collection.

        Returns:
            True if the snapshot was written.
        """
        try:
            if self.append:
                with open(self.path, "a") as f:
                    f.write(snapshot)
            else:
                self._replace(snapshot)
        except OSError as e:
            self.errors += 1
            logger.error(f"Error writing metrics to {self.path}: {e}")
            return False
        self.writes += 1
        return True

    def _replace(self, snapshot: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as f:
                f.write(snapshot)
            os.chmod(tmp_name, TEXTFILE_MODE)
            os.replace(tmp_name, self.path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def consume(self, metrics: Channel[str]) -> int:
        """Write every snapshot from a channel until it closes.

        Returns:
            Number of snapshots received.
        """
        count = 0
        async for snapshot in metrics:
            count += 1
            self.write(snapshot)
        return count


async def write_commands(commands: Channel[Command], out: TextIO) -> int:
    """Write each command as one log line until the channel closes.

    Lines are JSON led by the command's start time (see
    Command.to_log_line), so the file can itself be replayed.

    Args:
        commands: Command pass-through channel from the pipeline.
        out: Open text stream.

    Returns:
        Number of commands written.
    """
    count = 0
    async for cmd in commands:
        out.write(cmd.to_log_line() + "\n")
        count += 1
    out.flush()
    return count
