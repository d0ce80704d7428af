"""Logging configuration for taskvoiced daemon."""

import logging
import logging.handlers
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"
MAX_LOG_BYTES = 1024 * 1024
LOG_BACKUP_COUNT = 3


def setup_logging(log_level: str, log_file: Path) -> None:
    """Configure root logging to stderr and a rotating log file.

    Args:
        log_level: Level name (DEBUG, INFO, ...).
        log_file: Path of the log file; parent directories are created.
    """
    root = logging.getLogger()
    root.setLevel(log_level)

    # Drop handlers from a previous call so repeated setup doesn't duplicate lines
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    root.addHandler(console)

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUP_COUNT
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    except OSError as e:
        root.warning(f"Could not open log file {log_file}: {e}")

    # PortAudio/urllib3 chatter is rarely useful
    logging.getLogger("urllib3").setLevel(logging.WARNING)
