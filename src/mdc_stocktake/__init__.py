import logging
import sys
from pathlib import Path


CONSOLE_FORMAT = "[%(levelname)s] %(message)s"
FILE_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def _configure_logging() -> logging.Logger:
    """Configure the package logger with a console handler on stdout."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(logging.Formatter(fmt=CONSOLE_FORMAT))
    logger.addHandler(console_handler)

    return logger


def attach_log_file(path: Path) -> logging.Handler:
    """Attach an append-only file sink to the package logger.

    The file is opened immediately so an unwritable location surfaces as an
    ``OSError`` at startup rather than on the first log record. Calling this
    twice for the same path returns the handler already installed.

    Args:
        path (Path): Destination of the log file. Parent directories must
            already exist.

    Returns:
        logging.Handler: The installed file handler, so callers can detach it
            on teardown.

    Raises:
        OSError: If the file cannot be opened for appending.
    """

    target = Path(path).expanduser().resolve()
    for handler in log.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == target:
            return handler

    file_handler = logging.FileHandler(target, mode="a", encoding="utf-8")
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(
        logging.Formatter(fmt=FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    )
    log.addHandler(file_handler)
    return file_handler


def detach_log_file(handler: logging.Handler) -> None:
    """Flush, close, and remove a handler installed by :func:`attach_log_file`."""

    handler.flush()
    log.removeHandler(handler)
    handler.close()


log = _configure_logging()
log.debug("Logger initialized for the 'mdc_stocktake' package.")
