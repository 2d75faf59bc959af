import logging
import sys
from pathlib import Path
from typing import Optional

from config import LOG_LEVEL, LOG_FILE

LOGGER_NAME = "ca_reducer"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_backend_logger(
    level: str = LOG_LEVEL,
    log_file: Optional[str] = LOG_FILE,
    console_output: bool = True
) -> logging.Logger:
    """
    Configures the backend logger shared by every module.
    Safe to call more than once: existing handlers are replaced, not duplicated.

    Args:
        level (str): Logging level name, e.g. 'INFO' or 'DEBUG'.
        log_file (Optional[str]): Optional path of a log file. Its directory is created if needed.
        console_output (bool): Whether to log to stderr.

    Returns:
        logging.Logger: The configured logger.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path, encoding="utf-8")
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError as e:
            logger.warning(f"Could not open log file {log_path}: {e}. Logging to console only.")

    if not logger.handlers:
        logger.addHandler(logging.NullHandler())

    return logger


backend_logger = setup_backend_logger()
