# src/meegflow/utils/logging.py
"""Logging for meegflow.

Everything logs through :func:`message`, which forwards to loguru. Two levels
are added on top of loguru's own: ``HEADER`` marks the start of a run or a
stage and ``VALUES`` carries parameter dumps below ``DEBUG``.
:func:`configure_logger` installs the console sink (and a per-output-directory
file sink) and returns the verbosity MNE should use, since MNE logs through
the standard library.
"""

import os
import sys
import warnings
from pathlib import Path
from typing import Optional, Union

from loguru import logger

ENV_LEVEL = "MEEGFLOW_LOGGING_LEVEL"

logger.remove()
logger.level("HEADER", no=28, color="<blue>", icon="🧠")
logger.level("VALUES", no=5, color="<cyan>", icon="➤")

# loguru level -> MNE level. HEADER lines are progress markers, MNE's INFO
# output would drown them.
MNE_LEVELS = {
    "VALUES": "DEBUG",
    "DEBUG": "DEBUG",
    "INFO": "INFO",
    "SUCCESS": "INFO",
    "HEADER": "WARNING",
    "WARNING": "WARNING",
    "ERROR": "ERROR",
    "CRITICAL": "CRITICAL",
}

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "{extra[run]}<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[run]}{message}"

logger.configure(extra={"run": ""})


def resolve_level(verbose: Optional[Union[bool, str, int]] = None) -> str:
    """Name of the loguru level selected by ``verbose``.

    ``None`` reads ``MEEGFLOW_LOGGING_LEVEL`` (default ``INFO``). Booleans
    choose between ``INFO`` and ``WARNING``. Integers use the numeric scale
    of the standard library and round down to the nearest known level.
    Unknown names fall back to ``INFO``.
    """
    if verbose is None:
        verbose = os.getenv(ENV_LEVEL, "INFO")
    if isinstance(verbose, bool):
        return "INFO" if verbose else "WARNING"
    if isinstance(verbose, int):
        known = sorted(MNE_LEVELS, key=lambda name: logger.level(name).no)
        selected = known[0]
        for name in known:
            if logger.level(name).no <= verbose:
                selected = name
        return selected
    name = str(verbose).upper()
    return name if name in MNE_LEVELS else "INFO"


def _show_warning(msg, category, filename, lineno, file=None, line=None):
    key = (str(msg), category, filename, lineno)
    if key == _show_warning.last:
        return
    _show_warning.last = key
    logger.warning(f"{category.__name__}: {msg}")


_show_warning.last = None
warnings.showwarning = _show_warning


def message(level: str, text: str, **kwargs) -> None:
    """
    Log a message through the package logger.

    Parameters
    ----------
    level : str
        Log level ('debug', 'info', 'success', 'header', 'warning', ...)
    text : str
        Message text to log
    **kwargs
        Lazily evaluated context variables for formatting
    """
    if kwargs:
        logger.opt(lazy=True).log(level.upper(), text, **kwargs)
    else:
        logger.log(level.upper(), text)


def configure_logger(
    verbose: Optional[Union[bool, str, int]] = None,
    output_dir: Optional[Union[str, Path]] = None,
    task: Optional[str] = None,
) -> str:
    """Install the console sink and, with ``output_dir``, a rotating log file.

    Log files go to ``<output_dir>/logs`` or ``<output_dir>/<task>/logs``.
    The file sink is enqueued because directory runs log from worker threads.

    Returns
    -------
    str
        The MNE log level matching ``verbose``.
    """
    level = resolve_level(verbose)
    logger.remove()

    if output_dir is not None:
        log_dir = Path(output_dir) / task / "logs" if task else Path(output_dir) / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_dir / "meegflow_{time}.log"),
            level=level,
            format=FILE_FORMAT,
            rotation="1 day",
            retention="1 week",
            compression="zip",
            enqueue=True,
            colorize=False,
        )

    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT, colorize=True)
    return MNE_LEVELS[level]


def run_context(run_id: str):
    """Prefix every message logged inside the block with ``run_id``.

    Usage: ``with run_context(run_id): ...``. Directory runs interleave in
    the log, and the prefix tells them apart.
    """
    return logger.contextualize(run=f"[{run_id[-6:]}] ")


configure_logger()
