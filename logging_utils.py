import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

LEVELS = {
    'DEBUG': logging.DEBUG,
    'INFO': logging.INFO,
    'WARN': logging.WARNING,
    'WARNING': logging.WARNING,
    'ERROR': logging.ERROR,
}


def resolve_level(level: str | None = None) -> int:
    """Map a level name (or DERIBIT_LOG_LEVEL when None) to a logging level. Defaults to INFO."""
    name = (level or os.getenv('DERIBIT_LOG_LEVEL') or 'INFO').strip().upper()
    return LEVELS.get(name, logging.INFO)


def setup_logging(
    log_name: str = 'deribit_http',
    level: str | None = None,
    log_dir: Path | None = None,
) -> logging.Logger:
    """Set up logging with both file and console handlers.

    Handlers are attached to the root logger so the module loggers
    (auth, deribit_client, rate_limiter, ...) all reach them.

    Args:
        log_name: Log filename inside log_dir
        level: Level name; falls back to DERIBIT_LOG_LEVEL, then INFO
        log_dir: Directory for the rotating log file (default: logs/ beside the source)

    Returns:
        The root logger
    """
    logger = logging.getLogger()

    # Guard against adding duplicate handlers on repeated calls
    if any(getattr(h, '_deribit_http', False) for h in logger.handlers):
        return logger

    log_level = resolve_level(level)
    logger.setLevel(log_level)

    log_dir = log_dir or Path(__file__).parent / 'logs'
    log_dir.mkdir(parents=True, exist_ok=True)

    # File handler (rotating)
    file_formatter = logging.Formatter('%(asctime)s|%(name)s|%(levelname)s|%(funcName)s|%(lineno)d|%(message)s')
    file_handler = RotatingFileHandler(
        log_dir / f'{log_name}.log',
        maxBytes=1024 * 1024,  # 1 MB
        backupCount=5,
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(file_formatter)

    # Console handler
    console_formatter = logging.Formatter('%(levelname)s|%(name)s|%(message)s')
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(console_formatter)

    for handler in (file_handler, console_handler):
        handler._deribit_http = True
        logger.addHandler(handler)

    logger.debug(f"Log level set to {logging.getLevelName(log_level)}")
    return logger
