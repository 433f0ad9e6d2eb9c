"""Logging setup for **wp_vrt**.

Every module logs through a child of the ``"WPVRT"`` logger
(``WPVRT.pipeline``, ``WPVRT.capture``, ...), so one call to
:func:`configure` controls the whole batch::

      from wp_vrt.logger import logger
      logger.info("Batch started")

Console records go to *stderr*: stdout carries the batch JSON printed by the
CLI. An optional rotating log file receives the same records.
"""
from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Final, Union

# --------------------------------------------------------------------------- #
# Constants & basic types                                                     #
# --------------------------------------------------------------------------- #

_DEFAULT_FORMAT: Final[str] = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOGGER_NAME: Final[str] = "WPVRT"

# Libraries that are chatty at INFO while a batch runs.
_NOISY_LOGGERS: Final[tuple[str, ...]] = ("aiohttp.access", "asyncio", "PIL")

_LevelT = Union[int, str]


# --------------------------------------------------------------------------- #
# Helper builders                                                             #
# --------------------------------------------------------------------------- #


def _console_handler(formatter: logging.Formatter) -> logging.StreamHandler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    return handler


def _file_handler(file: Path | str, formatter: logging.Formatter) -> RotatingFileHandler:
    path = Path(file)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        filename=str(path),
        maxBytes=5 * 1024 * 1024,
        backupCount=3,
        encoding="utf-8",
    )
    handler.setFormatter(formatter)
    return handler


# --------------------------------------------------------------------------- #
# Public API                                                                  #
# --------------------------------------------------------------------------- #


def configure(
    *,
    level: _LevelT = "INFO",
    log_file: str | Path | None = None,
    log_format: str = _DEFAULT_FORMAT,
    replace_handlers: bool = True,
) -> logging.Logger:
    """(Re)configure the ``WPVRT`` logger tree.

    Parameters
    ----------
    level
        Numeric or textual logging level (e.g. ``"DEBUG"``).
    log_file
        Rotating logfile (5 MiB x 3). *None* -> console only.
    log_format
        Format string for :class:`logging.Formatter`.
    replace_handlers
        *True* - close and drop existing handlers first.
    """
    lg = logging.getLogger(LOGGER_NAME)
    lg.setLevel(level)

    if replace_handlers:
        for handler in list(lg.handlers):
            lg.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(log_format)
    lg.addHandler(_console_handler(formatter))
    if log_file is not None:
        lg.addHandler(_file_handler(log_file, formatter))

    quiet = max(logging.WARNING, lg.getEffectiveLevel())
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet)

    lg.propagate = False
    return lg


def init_logging(
    level: _LevelT = "INFO",
    log_file: str | Path | None = None,
    log_format: str = _DEFAULT_FORMAT,
) -> logging.Logger:
    """Entry used by the CLI: replace handlers and apply *level*."""
    return configure(level=level, log_file=log_file, log_format=log_format, replace_handlers=True)


# --------------------------------------------------------------------------- #
# Ready-to-use instance                                                       #
# --------------------------------------------------------------------------- #

logger: logging.Logger = init_logging()

__all__ = ["logger", "configure", "init_logging", "LOGGER_NAME"]
