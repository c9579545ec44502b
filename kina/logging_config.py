"""Logging setup for kina.

Progress is shown to the user through rich in the CLI, so the console
handler stays at WARNING unless ``--verbose`` is given. The optional log
file always records DEBUG, including the thread name, since nodes are
provisioned and configured in parallel.
"""

import logging
import os
import sys
from pathlib import Path

LOG_LEVEL_ENV_VAR = "KINA_LOG_LEVEL"

CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
FILE_FORMAT = "%(asctime)s - %(name)s - %(threadName)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Libraries that log every request or lock acquisition at INFO/DEBUG
QUIET_LOGGERS = ["urllib3", "kubernetes", "filelock"]


def setup_logging(level: str | None = None, log_file: str | Path | None = None, verbose: bool = False) -> None:
    """Configure the root logger.

    Args:
        level: Root level name. Falls back to ``KINA_LOG_LEVEL``, then INFO.
        log_file: Optional file receiving DEBUG output
        verbose: Show DEBUG on the console too
    """
    if verbose:
        level = "DEBUG"
    level = (level or os.environ.get(LOG_LEVEL_ENV_VAR) or "INFO").upper()
    if not isinstance(logging.getLevelName(level), int):
        level = "INFO"

    root_logger = logging.getLogger()
    # The file handler records DEBUG, so the root must let it through
    root_logger.setLevel(logging.DEBUG if log_file else level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path)
        except OSError as e:
            logging.warning(f"Cannot write log file {log_path}: {e}")
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
            root_logger.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
