import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '0.1.0'


def configure_logging(level=None, log_file=None):
    """
    Configure logging for backup runs.

    Args:
        level: Log level name or number (default: LOG_LEVEL env var, then INFO)
        log_file: Optional path of a rotating log file (default: LOG_FILE env var)

    Returns:
        The configured package logger
    """
    if level is None:
        level = os.environ.get('LOG_LEVEL', 'INFO')
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    if log_file is None:
        log_file = os.environ.get('LOG_FILE') or None

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=level, handlers=handlers)

    logger = logging.getLogger(__name__)
    logger.setLevel(level)

    logger.info(f"Logging configured (level: {logging.getLevelName(level)})")
    return logger
