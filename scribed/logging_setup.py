"""Logging configuration for the scribed daemon."""

import logging
import logging.handlers
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Rotate the log file at 5MB, keeping a few old copies
MAX_LOG_BYTES = 5 * 1024 * 1024
BACKUP_COUNT = 3


def setup_logging(log_level: str, log_file: Path) -> None:
    """Configure root logging for the daemon.

    Args:
        log_level: Level name, already validated by the config layer.
        log_file: Path of the rotating log file.
    """
    root = logging.getLogger()
    root.setLevel(log_level)

    # Drop handlers left over from a previous call or from basicConfig
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)

    log_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=MAX_LOG_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    # faster-whisper is chatty at INFO
    logging.getLogger("faster_whisper").setLevel(max(root.level, logging.WARNING))
