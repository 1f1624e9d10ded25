"""Business logic layer for the stocktake tool.

This module turns the operator's free-text lines into committed
``(location, code, quantity)`` transactions. It owns the session state and
the rules for implicit counts and undo, and it hands every committed
transaction to the :class:`~mdc_stocktake.pipeline.Pipeline` for persistence
and forwarding. All I/O is delegated to the data access layer and the workers.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Pattern

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from . import attach_log_file, data_manager, detach_log_file, log
from .constants import ABORT_JOIN_TIMEOUT, IMPLICIT_QUANTITY, Command, InputKind, Outcome
from .notifier import NotificationWorker
from .pipeline import PersistenceWorker, Pipeline
from .records import Transaction


class StocktakeError(Exception):
    """Base class for errors raised by the stocktake tool."""


class InputRejected(StocktakeError):
    """Raised when an input line is not valid in the current session state."""


class StartupError(StocktakeError):
    """Raised when a precondition for running a session cannot be met."""


class InputReadError(StocktakeError):
    """Raised when standard input can no longer be read."""


LOCATION_REQUIRED_FOR_QUANTITY = "You need to set a location before providing a quantity"
CODE_REQUIRED_FOR_QUANTITY = "You need to provide an item code before providing a quantity"
LOCATION_REQUIRED_FOR_CODE = "You need to provide a location before providing an item code."


@dataclass(frozen=True)
class Classifier:
    """Recognition patterns for location and quantity tokens."""

    location: Pattern[str]
    quantity: Pattern[str]

    def classify(self, line: str) -> InputKind:
        """Decide which kind of token ``line`` is.

        The location shape wins over the quantity shape; anything matching
        neither is an item code. Reserved commands must be intercepted by the
        caller beforehand.
        """
        if self.location.search(line):
            return InputKind.LOCATION
        if self.quantity.search(line):
            return InputKind.QUANTITY
        return InputKind.ITEM_CODE


def compile_pattern(pattern: str, *, name: str) -> Pattern[str]:
    """Compile a recognition pattern with ASCII-only character classes.

    Raises:
        StartupError: If ``pattern`` is not a valid regular expression.
    """
    try:
        return re.compile(pattern, re.ASCII)
    except re.error as exc:
        raise StartupError(f'could not compile regex for {name} "{pattern}": {exc}') from exc


def build_classifier(settings: data_manager.ConfigSettings) -> Classifier:
    return Classifier(
        location=compile_pattern(settings.location_pattern, name="location"),
        quantity=compile_pattern(settings.quantity_pattern, name="soh"),
    )


@dataclass
class SessionState:
    """Mutable state of one interactive stocktake session.

    ``history`` holds exactly the transactions that were handed to the
    pipeline, in order; it is the local undo log, not the running total.
    """

    current_location: str = ""
    current_code: str = ""
    history: List[Transaction] = field(default_factory=list)
    running: bool = True

    @property
    def has_pending_item(self) -> bool:
        return bool(self.current_location and self.current_code)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for everything one session needs."""

    settings: data_manager.ConfigSettings
    classifier: Classifier
    pipeline: Pipeline
    state: SessionState = field(default_factory=SessionState)
    engine: Optional[Engine] = field(default=None, repr=False, compare=False)
    log_handler: Optional[logging.Handler] = field(default=None, repr=False, compare=False)


def load_settings(config_path: Optional[Path] = None) -> data_manager.ConfigSettings:
    """Resolve configuration for a run.

    When no configuration file is supplied or discovered the built-in defaults
    apply, with relative paths anchored to the working directory. A discovered
    file anchors its relative paths to its own directory.

    Args:
        config_path (Path | None): Optional explicit configuration file.

    Returns:
        data_manager.ConfigSettings: Parsed settings.

    Raises:
        FileNotFoundError: If an explicit ``config_path`` does not exist.
        ValueError: If an option holds an unusable value.
    """
    located = data_manager.find_config_file(config_path)
    if located is None:
        return data_manager.default_settings()

    resolved = Path(located).expanduser().resolve()
    parser = data_manager.read_config(resolved)
    settings = data_manager.parse_settings(parser, base_path=resolved.parent)
    log.debug("Loaded settings from '%s'", resolved)
    return settings


def open_session(
    settings: data_manager.ConfigSettings,
    *,
    attach_log: bool = True,
) -> RuntimeContext:
    """Prepare every collaborator of an interactive session.

    The log sink is attached, both recognition patterns are compiled, the store
    is opened, and, when enabled, the notification listener is dialled. The
    dial happens here, before any input is read, so the pipeline's online flag
    is settled before the first submission. Workers are created but not
    started; see :func:`start_session`.

    Args:
        settings (data_manager.ConfigSettings): Settings for this run.
        attach_log (bool): Attach the file sink named by ``settings.log_file``.
            The CLI attaches it itself and passes ``False``.

    Returns:
        RuntimeContext: Ready-to-start session context.

    Raises:
        StartupError: If the log sink, a pattern, or the store is unusable.
    """
    log_handler = None
    if attach_log:
        try:
            log_handler = attach_log_file(settings.log_file)
        except OSError as exc:
            raise StartupError(f'could not open log file "{settings.log_file}": {exc}') from exc

    try:
        classifier = build_classifier(settings)
        try:
            engine = data_manager.open_store(settings.database_file)
        except SQLAlchemyError as exc:
            raise StartupError(f'could not open database file "{settings.database_file}": {exc}') from exc
    except StartupError:
        if log_handler is not None:
            detach_log_file(log_handler)
        raise

    notifier = None
    if settings.notifier.enabled:
        notifier = NotificationWorker(
            settings.notifier.host,
            settings.notifier.port,
            connect_timeout=settings.notifier.connect_timeout,
        )
        notifier.connect()

    pipeline = Pipeline(PersistenceWorker(engine), notifier)
    return RuntimeContext(
        settings=settings,
        classifier=classifier,
        pipeline=pipeline,
        engine=engine,
        log_handler=log_handler,
    )


def start_session(context: RuntimeContext) -> None:
    context.pipeline.start()
    log.info("Stocktake started, counts go to '%s'", context.settings.database_file)


def close_session(context: RuntimeContext) -> None:
    """Flush the pipeline, wait for the workers, and release resources."""
    context.pipeline.close()
    if context.engine is not None:
        context.engine.dispose()
    log.info("Closing stocktake, your data is safe :^)")
    if context.log_handler is not None:
        detach_log_file(context.log_handler)


def abort_session(context: RuntimeContext) -> None:
    """Abandon uncommitted counts, wait briefly for the workers, and flush the logs."""
    context.pipeline.abort(ABORT_JOIN_TIMEOUT)
    if context.engine is not None:
        context.engine.dispose()
    for handler in log.handlers:
        handler.flush()


def submit(context: RuntimeContext, location: str, code: str, soh: int) -> Transaction:
    """Commit one transaction to the session.

    The transaction is appended to the history, the current item code is
    cleared, and the transaction is handed to the pipeline. The hand-off
    blocks until the workers have taken it.

    Args:
        context (RuntimeContext): Active session.
        location (str): Location the count belongs to.
        code (str): Item code being counted.
        soh (int): Signed quantity delta; negative for compensations.

    Returns:
        Transaction: The committed transaction.
    """
    transaction = Transaction(location=location, code=code, soh=soh)
    log.info("Submit count to database (%s, %s, %d)", location, code, soh)

    state = context.state
    state.history.append(transaction)
    state.current_code = ""

    context.pipeline.dispatch(transaction)
    return transaction


def undo(context: RuntimeContext) -> Optional[Transaction]:
    """Compensate for the most recent transaction.

    The last history entry is removed and its inverse is submitted; nothing is
    deleted from the store. With an empty history this is a no-op.

    Returns:
        Transaction | None: The compensating transaction, or ``None`` when
            there was nothing to revert.
    """
    state = context.state
    if not state.history:
        log.info("No more transactions to revert")
        return None

    last = state.history.pop()
    log.info("Reverting transaction (%s, %s, %d)", last.location, last.code, last.soh)
    compensation = last.inverse()
    return submit(context, compensation.location, compensation.code, compensation.soh)


def close_pending_item(context: RuntimeContext) -> Optional[Transaction]:
    """Submit the item being tallied at the implicit quantity, if there is one."""
    state = context.state
    if not state.has_pending_item:
        return None
    return submit(context, state.current_location, state.current_code, IMPLICIT_QUANTITY)


def enter_location(context: RuntimeContext, location: str) -> None:
    state = context.state
    close_pending_item(context)
    log.info('Location changed from "%s" to "%s"', state.current_location, location)
    state.current_location = location


def enter_quantity(context: RuntimeContext, entry: str) -> Transaction:
    """Submit an explicit count for the current item.

    Raises:
        InputRejected: If no location or no item code is set, or if the entry
            does not parse as an integer.
    """
    state = context.state
    if not state.current_location:
        raise InputRejected(LOCATION_REQUIRED_FOR_QUANTITY)
    if not state.current_code:
        raise InputRejected(CODE_REQUIRED_FOR_QUANTITY)

    try:
        quantity = int(entry)
    except ValueError as exc:
        raise InputRejected(f'"{entry}" is not a valid quantity') from exc

    return submit(context, state.current_location, state.current_code, quantity)


def enter_item_code(context: RuntimeContext, code: str) -> None:
    """Start tallying ``code``, closing the previous item at the implicit count.

    Raises:
        InputRejected: If no location is set.
    """
    state = context.state
    if not state.current_location:
        raise InputRejected(LOCATION_REQUIRED_FOR_CODE)

    close_pending_item(context)
    state.current_code = code


def process_input(context: RuntimeContext, line: str) -> Outcome:
    """Apply one input line to the session.

    Reserved commands are handled first: ``exit`` closes the pending item and
    stops, ``undo`` reverts the last transaction. Every other line is
    classified and applied. Invalid lines are reported and leave the state
    untouched; they never stop the session.

    Args:
        context (RuntimeContext): Active session.
        line (str): Raw input line. Surrounding whitespace is ignored and blank
            lines are skipped.

    Returns:
        Outcome: ``STOP`` after ``exit``, otherwise ``CONTINUE``.
    """
    entry = line.strip()
    if not entry:
        return Outcome.CONTINUE

    if entry == Command.EXIT.value:
        close_pending_item(context)
        context.state.running = False
        return Outcome.STOP

    if entry == Command.UNDO.value:
        undo(context)
        return Outcome.CONTINUE

    kind = context.classifier.classify(entry)
    try:
        if kind is InputKind.LOCATION:
            enter_location(context, entry)
        elif kind is InputKind.QUANTITY:
            enter_quantity(context, entry)
        else:
            enter_item_code(context, entry)
    except InputRejected as error:
        log.error("%s", error)
    return Outcome.CONTINUE


def run_session(context: RuntimeContext, read_line: Optional[Callable[[str], str]] = None) -> None:
    """Drive the session from ``read_line`` until ``exit`` or end of input.

    End of input and a keyboard interrupt at the prompt both behave like
    ``exit``.

    Raises:
        InputReadError: If ``read_line`` fails for any other I/O reason.
    """
    if read_line is None:
        read_line = input
    prompt = context.settings.prompt
    while context.state.running:
        try:
            line = read_line(prompt)
        except (EOFError, KeyboardInterrupt):
            log.info("End of input, closing stocktake")
            line = Command.EXIT.value
        except (OSError, UnicodeDecodeError) as exc:
            raise InputReadError(f"could not take user input: {exc}") from exc

        if process_input(context, line) is Outcome.STOP:
            break
