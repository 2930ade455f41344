"""
Module Update Manager - Logging Setup
Adds the SUCCESS and VERBOSE levels and configures the root logger for the CLI.
"""

import logging
from pathlib import Path
from typing import Optional

SUCCESS = 25
VERBOSE = 15

logging.addLevelName(SUCCESS, "SUCCESS")
logging.addLevelName(VERBOSE, "VERBOSE")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CONSOLE_FORMAT = "%(levelname)s: %(message)s"

_LEVELS = {
    "debug": logging.DEBUG,
    "verbose": VERBOSE,
    "info": logging.INFO,
    "success": SUCCESS,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def level_from_name(name: Optional[str], default: int = logging.INFO) -> int:
    if not name:
        return default
    return _LEVELS.get(name.lower(), default)


def configure_logging(
    verbose: int = 0,
    log_file: Optional[Path] = None,
    log_level: Optional[str] = None,
) -> None:
    """
    Configure the root logger.

    Args:
        verbose: 0 for INFO, 1 for VERBOSE, 2 or more for DEBUG.
        log_file: Optional file that receives every record at the chosen level.
        log_level: Explicit level name; overrides ``verbose``.
    """
    if log_level:
        level = level_from_name(log_level)
    elif verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = VERBOSE
    else:
        level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)

    # Drop handlers from a previous call so repeated setup does not duplicate output
    for handler in list(root.handlers):
        if getattr(handler, "_mum_handler", False):
            root.removeHandler(handler)
            handler.close()

    stream = logging.StreamHandler()
    stream.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    stream._mum_handler = True
    root.addHandler(stream)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler._mum_handler = True
        root.addHandler(file_handler)
