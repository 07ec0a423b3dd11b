"""
Logging setup for the daemon process
"""

import logging
import os
from typing import List, Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

_LEVELS = {
    'DEBUG': logging.DEBUG,
    'INFO': logging.INFO,
    'WARN': logging.WARNING,
    'WARNING': logging.WARNING,
    'ERROR': logging.ERROR,
}


def parse_level(level: Optional[str]) -> int:
    """Map a LOG_LEVEL string to a logging level, defaulting to INFO"""
    if not level:
        return logging.INFO
    return _LEVELS.get(level.strip().upper(), logging.INFO)


def configure_logging(level: Optional[str] = None, log_dir: Optional[str] = None) -> Optional[str]:
    """
    Configure root logging: console always, plus a file under log_dir when writable.

    Returns:
        The log file path when file logging is active, otherwise None
    """
    level = level if level is not None else os.getenv('LOG_LEVEL')
    log_dir = log_dir if log_dir is not None else os.getenv('LOG_DIR')

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    log_file = None
    file_error = None
    if log_dir:
        try:
            os.makedirs(log_dir, exist_ok=True)
            log_file = os.path.join(log_dir, 'expensor.log')
            handlers.append(logging.FileHandler(log_file, mode='a'))
        except OSError as e:
            file_error = e
            log_file = None

    logging.basicConfig(level=parse_level(level), format=LOG_FORMAT, handlers=handlers, force=True)

    if file_error is not None:
        logging.getLogger(__name__).warning(
            f"File logging disabled for {log_dir}: {file_error}; continuing with console-only logging"
        )
    return log_file
