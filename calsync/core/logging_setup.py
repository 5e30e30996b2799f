"""Logging configuration shared by the web app and the CLI."""
import logging
from pathlib import Path

from calsync.core.config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(to_file: bool = True, verbose: bool = False) -> Path | None:
    """Configure the root logger.

    The web app logs to ``<log_dir>/latest.log``; the CLI logs to stderr.
    Returns the log file path when logging to a file.
    """
    level = logging.DEBUG if (settings.debug or verbose) else logging.INFO

    if not to_file:
        logging.basicConfig(level=level, format=LOG_FORMAT)
        return None

    log_dir = Path(settings.log_dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "latest.log"

    logging.basicConfig(level=level, format=LOG_FORMAT, filename=str(log_file))
    return log_file
