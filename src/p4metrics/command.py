"""Command records produced by the p4d log parser.

A Command is one completed server operation. The metrics engine only reads
these records; the parser owns their construction.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

TRIGGER_PREFIX = "trigger_"

# "YYYY/MM/DD HH:MM:SS" as written in p4d logs
LOG_TIME_RE = re.compile(r"\d{4}/\d{2}/\d{2} \d{2}:\d{2}:\d{2}")


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value))
        except ValueError:
            return 0
    return 0


def _as_float(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return 0.0
    return 0.0


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y")
    if isinstance(value, (bool, int, float)):
        return bool(value)
    return False


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


@dataclass
class TableUse:
    """Lock or trigger usage for one table within a command.

    Attributes:
        table_name: The db table name, or ``trigger_<name>`` for triggers.
        total_read_wait: Time spent waiting for read locks (ms).
        total_read_held: Time read locks were held (ms).
        total_write_wait: Time spent waiting for write locks (ms).
        total_write_held: Time write locks were held (ms).
        trigger_lapse: Trigger run time (seconds).
    """

    table_name: str
    total_read_wait: int = 0
    total_read_held: int = 0
    total_write_wait: int = 0
    total_write_held: int = 0
    trigger_lapse: float = 0.0

    @property
    def is_trigger(self) -> bool:
        """True if this entry records a trigger rather than a db table."""
        return (
            len(self.table_name) > len(TRIGGER_PREFIX)
            and self.table_name.startswith(TRIGGER_PREFIX)
        )

    @property
    def trigger_name(self) -> str:
        """The trigger name with the ``trigger_`` prefix stripped."""
        return self.table_name[len(TRIGGER_PREFIX):]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TableUse:
        """Create a TableUse from the parser's JSON representation."""
        return cls(
            table_name=_as_str(data.get("tableName")),
            total_read_wait=_as_int(data.get("totalReadWait")),
            total_read_held=_as_int(data.get("totalReadHeld")),
            total_write_wait=_as_int(data.get("totalWriteWait")),
            total_write_held=_as_int(data.get("totalWriteHeld")),
            trigger_lapse=_as_float(data.get("triggerLapse")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tableName": self.table_name,
            "totalReadWait": self.total_read_wait,
            "totalReadHeld": self.total_read_held,
            "totalWriteWait": self.total_write_wait,
            "totalWriteHeld": self.total_write_held,
            "triggerLapse": self.trigger_lapse,
        }


@dataclass
class Command:
    """A completed p4d command as parsed from the server log.

    Attributes:
        cmd: Command name (e.g. "user-sync").
        user: User name as logged.
        ip: Client address, optionally prefixed with "<replica>/".
        app: Client program/application string.
        completed_lapse: Wall time to completion in seconds.
        ucpu: User CPU in milliseconds.
        scpu: System CPU in milliseconds.
        running: Number of commands running on the server at the time.
        net_files_added: Files added to the workspace by a sync.
        net_files_updated: Files updated in the workspace by a sync.
        net_files_deleted: Files deleted from the workspace by a sync.
        net_bytes_added: Bytes added by a sync.
        net_bytes_updated: Bytes updated by a sync.
        cmd_error: Whether the command completed with an error.
        tables: Table lock and trigger entries.
        pid: Server process id.
        workspace: Client workspace name.
        args: Command arguments.
        start_time: Start time as logged ("YYYY/MM/DD HH:MM:SS").
        end_time: End time as logged.
        line_no: Log line number of the start record.
    """

    cmd: str
    user: str = ""
    ip: str = ""
    app: str = ""
    completed_lapse: float = 0.0
    ucpu: int = 0
    scpu: int = 0
    running: int = 0
    net_files_added: int = 0
    net_files_updated: int = 0
    net_files_deleted: int = 0
    net_bytes_added: int = 0
    net_bytes_updated: int = 0
    cmd_error: bool = False
    tables: list[TableUse] = field(default_factory=list)
    pid: int = 0
    workspace: str = ""
    args: str = ""
    start_time: str = ""
    end_time: str = ""
    line_no: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Command:
        """Create a Command from the parser's camelCase JSON representation.

        Missing or mistyped fields fall back to zero/empty values.

        Args:
            data: Decoded JSON object for one command.

        Returns:
            A Command instance.
        """
        tables = []
        raw_tables = data.get("tables")
        if isinstance(raw_tables, list):
            for entry in raw_tables:
                if not isinstance(entry, dict):
                    continue
                table = TableUse.from_dict(entry)
                if table.table_name:
                    tables.append(table)

        return cls(
            cmd=_as_str(data.get("cmd")),
            user=_as_str(data.get("user")),
            ip=_as_str(data.get("ip")),
            app=_as_str(data.get("app")),
            completed_lapse=_as_float(data.get("completedLapse")),
            ucpu=_as_int(data.get("uCpu")),
            scpu=_as_int(data.get("sCpu")),
            running=_as_int(data.get("running")),
            net_files_added=_as_int(data.get("netFilesAdded")),
            net_files_updated=_as_int(data.get("netFilesUpdated")),
            net_files_deleted=_as_int(data.get("netFilesDeleted")),
            net_bytes_added=_as_int(data.get("netBytesAdded")),
            net_bytes_updated=_as_int(data.get("netBytesUpdated")),
            cmd_error=_as_bool(data.get("cmdError")),
            tables=tables,
            pid=_as_int(data.get("pid")),
            workspace=_as_str(data.get("workspace")),
            args=_as_str(data.get("args")),
            start_time=_as_str(data.get("startTime")),
            end_time=_as_str(data.get("endTime")),
            line_no=_as_int(data.get("lineNo")),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the camelCase JSON representation."""
        return {
            "cmd": self.cmd,
            "pid": self.pid,
            "lineNo": self.line_no,
            "user": self.user,
            "workspace": self.workspace,
            "ip": self.ip,
            "app": self.app,
            "args": self.args,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "completedLapse": self.completed_lapse,
            "running": self.running,
            "uCpu": self.ucpu,
            "sCpu": self.scpu,
            "netFilesAdded": self.net_files_added,
            "netFilesUpdated": self.net_files_updated,
            "netFilesDeleted": self.net_files_deleted,
            "netBytesAdded": self.net_bytes_added,
            "netBytesUpdated": self.net_bytes_updated,
            "cmdError": self.cmd_error,
            "tables": [t.to_dict() for t in self.tables],
        }

    def to_json(self) -> str:
        """Serialize to a compact JSON line."""
        return json.dumps(self.to_dict(), separators=(",", ":"))

    def to_log_line(self) -> str:
        """Serialize to a JSON line led by the start time, as in a p4d log.

        The "\\tYYYY/MM/DD HH:MM:SS " prefix lets a replay of the line find
        its time bucket. Records without a well-formed start time are
        written as plain JSON.
        """
        if LOG_TIME_RE.fullmatch(self.start_time):
            return f"\t{self.start_time} {self.to_json()}"
        return self.to_json()
