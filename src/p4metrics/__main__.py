"""CLI entry point for p4metrics.

Usage:
    python -m p4metrics <command> [options]

Commands:
    live [--config PATH] [--input PATH|-] [--output PATH] [--debug]
    replay <logfile> [--config PATH] [--output PATH] [--commands PATH] [--debug]
    config validate [--config PATH]
    config get <key> [--config PATH]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import NoReturn, TextIO

from p4metrics import __version__

logger = logging.getLogger("p4metrics")

LINES_CAPACITY = 10000

LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="p4metrics",
        description="Command metrics for Perforce (p4d) servers",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # live command
    live_parser = subparsers.add_parser(
        "live", help="Aggregate commands and rewrite a Prometheus textfile every interval"
    )
    live_parser.add_argument("--config", help="Path to config file")
    live_parser.add_argument(
        "--input",
        default="-",
        help="File of JSON command records, one per line (default: stdin)",
    )
    live_parser.add_argument(
        "--output",
        help="Metrics file to write. Defaults to output.metrics_output.",
    )
    live_parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging"
    )

    # replay command
    replay_parser = subparsers.add_parser(
        "replay", help="Replay a historical log into timestamped metric lines"
    )
    replay_parser.add_argument("logfile", help="Log file to replay")
    replay_parser.add_argument("--config", help="Path to config file")
    replay_parser.add_argument(
        "--output",
        help="Metrics file to append to. Defaults to output.metrics_output.",
    )
    replay_parser.add_argument(
        "--commands",
        help="Also write every aggregated command to this file as JSON lines",
    )
    replay_parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging"
    )

    # config command
    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(
        dest="config_command", help="Config subcommands"
    )

    # config validate
    validate_parser = config_subparsers.add_parser(
        "validate", help="Validate configuration"
    )
    validate_parser.add_argument("--config", help="Path to config file")

    # config get
    get_parser = config_subparsers.add_parser("get", help="Get configuration value")
    get_parser.add_argument("key", help="Configuration key (e.g. metrics.server_id)")
    get_parser.add_argument("--config", help="Path to config file")

    return parser


def setup_logging(log_file: str = "", debug: bool = False) -> None:
    """Attach a handler to the p4metrics logger.

    Args:
        log_file: Rotating log file to write to. Empty logs to stderr.
        debug: Log at DEBUG rather than INFO level.
    """
    handler: logging.Handler
    if log_file:
        handler = RotatingFileHandler(
            log_file, maxBytes=10*1024*1024, backupCount=5
        )
    else:
        handler = logging.StreamHandler(sys.stderr)
    formatter = logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%dT%H:%M:%S%z')
    handler.setFormatter(formatter)

    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    # Avoid adding multiple handlers if re-initialized
    if not logger.handlers:
        logger.addHandler(handler)


def load_config(config_path: str | None):
    """Load an explicit config file, or search for one and fall back to defaults."""
    from p4metrics.config import Config

    if config_path:
        return Config.load(Path(config_path))
    return Config.load_or_default()


async def run_pipeline(
    config,
    stream: TextIO,
    output: Path,
    commands_out: TextIO | None = None,
    handle_signals: bool = True,
) -> int:
    """Run the metrics pipeline over a stream of command records.

    Args:
        config: The metrics configuration.
        stream: Input text stream of JSON command records.
        output: Metrics file; replaced in live mode, appended to when historical.
        commands_out: Optional stream receiving every command as JSON.
        handle_signals: Stop on SIGINT/SIGTERM.

    Returns:
        Number of snapshots emitted.
    """
    from p4metrics.channel import Channel
    from p4metrics.metrics.pipeline import MetricsPipeline
    from p4metrics.parser import JsonCommandParser
    from p4metrics.sinks import TextfileSink, write_commands
    from p4metrics.sources import read_lines

    loop = asyncio.get_running_loop()
    cancel = asyncio.Event()
    signals = (signal.SIGINT, signal.SIGTERM) if handle_signals else ()
    for signum in signals:
        loop.add_signal_handler(signum, cancel.set)

    lines: Channel[str] = Channel(LINES_CAPACITY, name="lines")
    pipeline = MetricsPipeline(config, JsonCommandParser())
    outputs = pipeline.process_events(
        lines, cancel=cancel, need_cmd_channel=commands_out is not None
    )
    sink = TextfileSink(output, append=config.historical)
    reader = asyncio.create_task(read_lines(stream, lines))

    consumers = [sink.consume(outputs.metrics)]
    if outputs.commands is not None:
        consumers.append(write_commands(outputs.commands, commands_out))

    try:
        await asyncio.gather(pipeline.wait(), *consumers)
    finally:
        for signum in signals:
            loop.remove_signal_handler(signum)
        if not reader.done():
            reader.cancel()

    if cancel.is_set():
        logger.info("Stopped on signal")
    elif not reader.cancelled():
        # Surface read errors; the pipeline has already flushed what it had
        reader.result()

    logger.info(
        f"Processed {pipeline.aggregator.cmds_processed} commands, "
        f"wrote {sink.writes} snapshots to {output}"
    )
    return pipeline.snapshots_emitted


def cmd_live(args: argparse.Namespace) -> int:
    """Handle 'live' command."""
    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    setup_logging(config.output.log_file, debug=args.debug)
    config.metrics.historical = False
    output = Path(args.output or config.output.metrics_output)
    logger.info(
        f"Starting live metrics, interval {config.metrics.update_interval}, "
        f"output {output}"
    )

    try:
        if args.input == "-":
            asyncio.run(run_pipeline(config.metrics, sys.stdin, output))
        else:
            with open(args.input) as stream:
                asyncio.run(run_pipeline(config.metrics, stream, output))
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


def cmd_replay(args: argparse.Namespace) -> int:
    """Handle 'replay' command."""
    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    logfile = Path(args.logfile)
    if not logfile.exists():
        print(f"Error: Log file not found: {logfile}", file=sys.stderr)
        return 1

    setup_logging(config.output.log_file, debug=args.debug)
    config.metrics.historical = True
    output = Path(args.output or config.output.metrics_output)
    logger.info(f"Replaying {logfile} into {output}")

    try:
        with open(logfile) as stream:
            if args.commands:
                with open(args.commands, "w") as commands_out:
                    asyncio.run(
                        run_pipeline(config.metrics, stream, output, commands_out)
                    )
            else:
                asyncio.run(run_pipeline(config.metrics, stream, output))
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


def cmd_config_get(args: argparse.Namespace) -> int:
    """Handle 'config get' command."""
    try:
        config = load_config(args.config)
        value = config.get_value(args.key)
        print(value)
        return 0
    except KeyError:
        print(f"Error: Config key not found: {args.key}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Error reading config: {e}", file=sys.stderr)
        return 1


def cmd_config_validate(args: argparse.Namespace) -> int:
    """Handle 'config validate' command."""
    from p4metrics.config import Config

    try:
        config = Config.load(Path(args.config) if args.config else None)
        metrics = config.metrics
        print(f"Configuration valid: {config.config_path}")
        print(f"  Version: {config.version}")
        print(f"  Server ID: {metrics.server_id or '(none)'}")
        print(f"  SDP instance: {metrics.sdp_instance or '(none)'}")
        print(f"  Update interval: {metrics.update_interval.total_seconds():g}s")
        print(f"  By user: {metrics.output_cmds_by_user}")
        if metrics.output_cmds_by_user_regex:
            print(f"  User detail regex: {metrics.output_cmds_by_user_regex}")
        print(f"  By IP: {metrics.output_cmds_by_ip}")
        print(f"  Metrics output: {config.output.metrics_output}")
        return 0
    except FileNotFoundError as e:
        print(f"No configuration found: {e}", file=sys.stderr)
        return 0  # Missing config is not an error
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1


def main() -> NoReturn:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    if args.command == "live":
        sys.exit(cmd_live(args))
    elif args.command == "replay":
        sys.exit(cmd_replay(args))
    elif args.command == "config":
        if args.config_command == "validate":
            sys.exit(cmd_config_validate(args))
        elif args.config_command == "get":
            sys.exit(cmd_config_get(args))
        else:
            parser.parse_args(["config", "--help"])
            sys.exit(1)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
