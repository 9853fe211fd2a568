"""Logging setup for the roost CLI and hook entry points.

Log lines go to $ROOST_HOME/logs/roost.log only; the terminal is reserved
for command output.
"""

import logging
import os
from pathlib import Path

from roost.core.paths import get_log_dir

DEBUG_ENV = "ROOST_DEBUG"
LOG_FILENAME = "roost.log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(process)d %(name)s: %(message)s"

_file_handler: logging.Handler | None = None


def debug_enabled(debug: bool = False) -> bool:
    """Check the --debug flag and the ROOST_DEBUG environment variable."""
    return debug or os.environ.get(DEBUG_ENV, "") in ("1", "true", "yes")


def configure_logging(debug: bool = False, log_dir: Path | None = None) -> Path | None:
    """Attach a file handler to the ``roost`` logger.

    Safe to call more than once; a previous handler is replaced.

    Returns:
        The log file path, or None if the log directory is not writable.
    """
    global _file_handler

    logger = logging.getLogger("roost")
    level = logging.DEBUG if debug_enabled(debug) else logging.INFO
    logger.setLevel(level)

    if _file_handler is not None:
        logger.removeHandler(_file_handler)
        _file_handler.close()
        _file_handler = None

    log_path = (log_dir or get_log_dir()) / LOG_FILENAME
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path, encoding="utf-8")
    except OSError:
        _file_handler = logging.NullHandler()
        logger.addHandler(_file_handler)
        return None

    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    _file_handler = handler
    return log_path
