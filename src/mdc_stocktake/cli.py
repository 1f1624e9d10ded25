"""Command-line entry points for the stocktake tool.

All orchestration in this module is limited to argparse wiring and handing
parsed arguments to the business and data layers. The interactive session
itself lives in :mod:`mdc_stocktake.core_logic`.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Sequence

from sqlalchemy.exc import SQLAlchemyError

from . import attach_log_file, data_manager, core_logic, detach_log_file, log
from .notifier import EventListener, log_event


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[data_manager.ConfigSettings, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="mdc-stocktake",
        description="Interactive stocktake: scan locations and item codes, count stock on hand.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini, or built-in settings).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    specs = [
        register_count_command(subparsers),
        register_stock_command(subparsers),
        register_export_command(subparsers),
        register_listen_command(subparsers),
    ]
    for spec in specs:
        spec.register(subparsers)
    return build_command_table(specs)


def register_count_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``count``."""
    name = "count"
    help_text = "Start an interactive stocktake session."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_count)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display counted stock on hand."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--location", default=None, help="Only show one location.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_export_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export``."""
    name = "export"
    help_text = "Write counted stock on hand to an .xlsx workbook."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("destination", type=Path)
        parser.add_argument("--location", default=None, help="Only export one location.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export)


def register_listen_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``listen``."""
    name = "listen"
    help_text = "Receive counts forwarded by other stocktake sessions."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--host", default=None, help="Address to bind (defaults to [Notifier] Host).")
        parser.add_argument("--port", type=int, default=None, help="Port to bind (defaults to [Notifier] Port).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_listen)


def dispatch_command(
    settings: data_manager.ConfigSettings,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(settings, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def run_count(settings: data_manager.ConfigSettings, args: argparse.Namespace) -> int:
    """Run one interactive session until ``exit`` or end of input."""
    context = core_logic.open_session(settings, attach_log=False)
    core_logic.start_session(context)
    try:
        core_logic.run_session(context)
    except BaseException:
        core_logic.abort_session(context)
        raise
    core_logic.close_session(context)
    return 0


def open_store_for_reading(settings: data_manager.ConfigSettings):
    try:
        return data_manager.open_store(settings.database_file)
    except SQLAlchemyError as exc:
        raise core_logic.StartupError(
            f'could not open database file "{settings.database_file}": {exc}'
        ) from exc


def run_stock_report(settings: data_manager.ConfigSettings, args: argparse.Namespace) -> int:
    """Print stored counts, one line per (location, code)."""
    engine = open_store_for_reading(settings)
    try:
        rows = data_manager.fetch_counts(engine, location=args.location)
    finally:
        engine.dispose()
    for row in rows:
        log.info("%-4s %-24s %6d", row.location, row.code, row.soh)
    log.info("%d counted items", len(rows))
    return 0


def run_export(settings: data_manager.ConfigSettings, args: argparse.Namespace) -> int:
    """Write stored counts to a workbook."""
    engine = open_store_for_reading(settings)
    try:
        rows = data_manager.fetch_counts(engine, location=getattr(args, "location", None))
    finally:
        engine.dispose()
    data_manager.export_counts(rows, args.destination)
    return 0


def run_listen(settings: data_manager.ConfigSettings, args: argparse.Namespace) -> int:
    """Serve forwarded counts until interrupted."""
    host = args.host if args.host is not None else settings.notifier.host
    port = args.port if args.port is not None else settings.notifier.port
    with EventListener((host, port), log_event) as server:
        log.info("Listening for counts on %s:%d", *server.server_address[:2])
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            log.info("Listener stopped")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into exit codes, logging them as fatal."""
    if isinstance(error, core_logic.StartupError):
        log.critical("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.critical("%s", error)
        return 3
    log.critical("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)

    log_handler = None
    try:
        settings = core_logic.load_settings(getattr(args, "config", None))
        try:
            log_handler = attach_log_file(settings.log_file)
        except OSError as exc:
            raise core_logic.StartupError(f'could not open log file "{settings.log_file}": {exc}') from exc
        return dispatch_command(settings, args, command_table)
    except Exception as error:
        return handle_cli_error(error)
    finally:
        if log_handler is not None:
            detach_log_file(log_handler)
