"""Command-line entry point for the watcher."""
from __future__ import annotations

import argparse
import logging
import shlex
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .actions import Action
from .backends import Backend, ContainerRunBackend, ExecBackend, HttpGetBackend, ShellBackend
from .config import (
    BACKEND_KINDS,
    DEFAULT_CONFIG_NAMES,
    ConfigError,
    Configuration,
    locate_config,
    parse_config,
    parse_operations,
    read_config_data,
)
from .events import OPERATION_NAMES
from .filters import Filter
from .locks import LockRegistry
from .reporting import Reporter
from .session import SessionError, SessionOutcome, WatchSession
from .signals import SIGNAL_NAMES, parse_signal

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="watchfs",
        description="Run commands, containers or HTTP requests when files change",
    )
    parser.add_argument(
        "-c",
        "--config",
        help=f"use the config file (YAML or JSON) at this path (defaults: {', '.join(DEFAULT_CONFIG_NAMES)})",
    )
    parser.add_argument("--ext", action="append", default=[], help="add an extension to watch")
    parser.add_argument("-e", "--exts", action="append", default=[], help="add multiple watched extensions (CSV)")
    parser.add_argument("--watch", action="append", default=[], help="add a path to watch")
    parser.add_argument("-w", "--watches", action="append", default=[], help="add multiple watched paths (CSV)")
    parser.add_argument("-i", "--ignore", action="append", default=[], help="add a path/glob to ignore")
    parser.add_argument("--ignore-ext", action="append", default=[], help="add an extension to ignore")
    parser.add_argument("--ignore-exts", action="append", default=[], help="add multiple ignored extensions (CSV)")
    parser.add_argument(
        "-s",
        "--signal",
        type=str.upper,
        choices=SIGNAL_NAMES,
        metavar="SIGNAL",
        help=f"signal to send on changes (choices: {', '.join(SIGNAL_NAMES)})",
    )
    parser.add_argument(
        "-a",
        "--action",
        default="exec",
        choices=BACKEND_KINDS,
        help="set the action type for the default action (default: %(default)s)",
    )
    parser.add_argument(
        "--op",
        action="append",
        default=[],
        help=f"add a filesystem operation to watch for (choices: {', '.join(OPERATION_NAMES)})",
    )
    parser.add_argument("--ops", action="append", default=[], help="add filesystem operations to watch for (CSV)")
    parser.add_argument("--ignore-op", action="append", default=[], help="add a filesystem operation to ignore")
    parser.add_argument("--ignore-ops", action="append", default=[], help="add multiple ignored filesystem operations (CSV)")
    parser.add_argument("--print-config", action="store_true", help="print config to stdout and exit")
    parser.add_argument(
        "--print-config-format",
        default="yaml",
        choices=("json", "yaml"),
        help="print config in this format (default: %(default)s)",
    )
    parser.add_argument("-q", "--quiet", action="store_true", help="do not print events to stdout")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument("command", nargs=argparse.REMAINDER, help="command for the default action")
    return parser


def apply_arguments(config: Configuration, args: argparse.Namespace) -> Configuration:
    """Layer command-line flags over a loaded configuration."""

    extensions = list(args.ext) + _split_csv(args.exts)
    if extensions:
        config.filter = Filter.build(
            extensions=extensions,
            operations=config.filter.operations,
            paths=config.filter.paths,
        )
    op_names = list(args.op) + _split_csv(args.ops)
    if op_names:
        config.filter = Filter.build(
            extensions=config.filter.extensions,
            operations=parse_operations(op_names, field_name="--ops"),
            paths=config.filter.paths,
        )

    paths = list(args.watch) + _split_csv(args.watches)
    if paths:
        config.paths = paths

    ignored_extensions = list(args.ignore_ext) + _split_csv(args.ignore_exts)
    if ignored_extensions:
        config.ignores.append(Filter.build(extensions=ignored_extensions))
    ignored_ops = list(args.ignore_op) + _split_csv(args.ignore_ops)
    if ignored_ops:
        config.ignores.append(
            Filter.build(operations=parse_operations(ignored_ops, field_name="--ignore-ops"))
        )
    config.ignore_globs.extend(args.ignore)

    if args.signal:
        config.signal = parse_signal(args.signal)

    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if command:
        config.actions.append(
            Action(
                name="command",
                backend=_default_backend(args.action, command),
                delay=config.delay,
                run_on_start=config.run_on_start,
            )
        )

    config.bind_globals()
    return config


def _default_backend(kind: str, command: List[str]) -> Backend:
    if kind == "shell":
        return ShellBackend(" ".join(shlex.quote(arg) for arg in command))
    if kind == "dockerRun":
        return ContainerRunBackend(command[0], command=command[1:])
    if kind == "httpGet":
        if len(command) > 1:
            raise ConfigError(f"too many arguments for action '{kind}': {command}")
        return HttpGetBackend(command[0])
    return ExecBackend(command)


def _split_csv(values: List[str]) -> List[str]:
    items: List[str] = []
    for value in values:
        items.extend(part.strip() for part in value.split(",") if part.strip())
    return items


class _ConfigSource:
    """Re-reads the configuration for every session, keeping the last good copy."""

    def __init__(self, args: argparse.Namespace):
        self._args = args
        self._path: Optional[Path] = None
        self._data: Optional[Dict[str, Any]] = None

    def load(self) -> Configuration:
        path = locate_config(self._args.config)
        data = read_config_data(path)
        config = self._build(data, path)
        self._path, self._data = path, data
        return config

    def last_good(self) -> Configuration:
        return self._build(self._data or {}, self._path)

    def _build(self, data: Dict[str, Any], path: Optional[Path]) -> Configuration:
        config = parse_config(data)
        config.source = path
        return apply_arguments(config, self._args)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )

    source = _ConfigSource(args)
    try:
        config = source.load()
    except ConfigError as exc:
        logging.error("%s", exc)
        return 2

    if args.print_config:
        sys.stdout.write(config.dump(args.print_config_format))
        return 0

    reporter = Reporter(quiet=args.quiet)
    locks = LockRegistry()
    while True:
        session = WatchSession(config, locks=locks, reporter=reporter)
        previous_handler = _stop_on_sigterm(session)
        try:
            outcome = session.run()
        except SessionError as exc:
            reporter.error(exc)
            return 1
        except KeyboardInterrupt:
            logger.info("Interrupted by user")
            return 0
        finally:
            if previous_handler is not None:
                signal.signal(signal.SIGTERM, previous_handler)

        if outcome is not SessionOutcome.RELOAD:
            return 0
        try:
            config = source.load()
        except ConfigError as exc:
            reporter.error(exc)
            config = source.last_good()


def _stop_on_sigterm(session: WatchSession):
    try:
        return signal.signal(signal.SIGTERM, lambda signum, frame: session.stop())
    except ValueError:
        # Not on the main thread.
        return None
