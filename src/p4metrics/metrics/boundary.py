"""Time bucket detection for historical log replay.

When replaying a complete log there is no wall clock to drive snapshots.
Instead the timestamps embedded in p4d log lines are used: a line starting
with "\\tYYYY/MM/DD HH:MM:SS" marks the start of a command record, and once
the log time has advanced by at least the update interval a snapshot is due.

This check runs on every line, so it compares characters at fixed offsets
rather than using a regex or a full datetime parse.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import NamedTuple

P4_TIME_FORMAT = "%Y/%m/%d %H:%M:%S"

# len("\t2020/03/04 12:13:14")
PREFIX_LEN = 20

# Minimum log time gap before the parser is told about a new time
NOTIFY_GAP = timedelta(seconds=3)

_DIGIT_OFFSETS = (1, 2, 3, 4, 6, 7, 9, 10, 12, 13, 15, 16, 18, 19)


class Boundary(NamedTuple):
    """Result of checking one line.

    Attributes:
        update_required: A snapshot should be emitted for the new time bucket.
        notify_time: Log time to pass on to the parser, if any.
    """

    update_required: bool
    notify_time: datetime | None = None


NO_UPDATE = Boundary(False)


def has_time_prefix(line: str) -> bool:
    """Check whether a line starts with "\\tYYYY/MM/DD HH:MM:SS"."""
    if len(line) < PREFIX_LEN:
        return False
    if (
        line[0] != "\t"
        or line[5] != "/"
        or line[8] != "/"
        or line[11] != " "
        or line[14] != ":"
        or line[17] != ":"
    ):
        return False
    for i in _DIGIT_OFFSETS:
        if not "0" <= line[i] <= "9":
            return False
    return True


def parse_log_time(prefix: str) -> datetime | None:
    """Parse a "\\tYYYY/MM/DD HH:MM:SS" prefix as a UTC datetime."""
    try:
        return datetime.strptime(prefix[1:PREFIX_LEN], P4_TIME_FORMAT).replace(
            tzinfo=timezone.utc
        )
    except ValueError:
        return None


class BoundaryDetector:
    """Tracks the latest time bucket seen in a replayed log."""

    def __init__(self, update_interval: timedelta):
        """Initialize the detector.

        Args:
            update_interval: Log time that must pass between snapshots.
        """
        self.update_interval = update_interval
        self.latest_prefix = ""
        self.latest_time: datetime | None = None

    @property
    def timestamp(self) -> int:
        """Unix time of the current bucket, or 0 before any bucket was seen."""
        if self.latest_time is None:
            return 0
        return int(self.latest_time.timestamp())

    def check(self, line: str) -> Boundary:
        """Check whether a line starts a later time bucket.

        Log records are not strictly ordered (long-running commands log
        their completion late), so lines with an earlier or equal time are
        ignored.

        Args:
            line: A raw log line.

        Returns:
            Boundary describing whether a snapshot is due and whether the
            parser should be notified of a new log time.
        """
        if not has_time_prefix(line):
            return NO_UPDATE

        prefix = line[:PREFIX_LEN]
        if not self.latest_prefix:
            # Digits are checked but not ranges, e.g. month 13
            dt = parse_log_time(prefix)
            if dt is None:
                return NO_UPDATE
            self.latest_prefix = prefix
            self.latest_time = dt
            return NO_UPDATE

        if prefix <= self.latest_prefix:
            return NO_UPDATE

        dt = parse_log_time(prefix)
        if dt is None:
            return NO_UPDATE

        gap = dt - self.latest_time
        notify_time = dt if gap >= NOTIFY_GAP else None
        if gap >= self.update_interval:
            self.latest_time = dt
            self.latest_prefix = prefix
            return Boundary(True, notify_time)
        if notify_time is not None:
            return Boundary(False, notify_time)
        return NO_UPDATE
