"""
Logging configuration for the daemon.

The ``tracescore`` and ``backend`` loggers share one console handler and one
rotating file handler; module loggers (``logging.getLogger(__name__)``)
propagate to them.
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Iterable, List, Optional

from .config import Settings, settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DAEMON_LOGGERS = ("tracescore", "backend")


def _handlers(level: str, log_file: Optional[Path], config: Settings) -> List[logging.Handler]:
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler()
    handlers: List[logging.Handler] = [console_handler]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=config.log_max_bytes,
                backupCount=config.log_backup_count,
                encoding="utf-8",
            )
        )
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
    return handlers


def setup_logging(
    logger_names: Iterable[str] = DAEMON_LOGGERS,
    level: Optional[str] = None,
    log_file: Optional[Path] = None,
    config: Optional[Settings] = None,
) -> List[logging.Logger]:
    """
    Attach the daemon's handlers to each named logger.

    Args:
        logger_names: Top-level loggers to configure
        level: Override for the configured log level
        log_file: Defaults to ``<logs_dir>/tracescore.log``
        config: Settings to read defaults from

    Returns:
        The configured loggers

    Loggers that already have handlers are left alone, so calling this twice
    doesn't duplicate output.
    """
    config = config or settings
    level = (level or config.log_level).upper()
    if log_file is None:
        log_file = config.logs_dir / "tracescore.log"

    pending = [logging.getLogger(name) for name in logger_names]
    pending = [logger for logger in pending if not logger.handlers]
    if pending:
        handlers = _handlers(level, log_file, config)
        for logger in pending:
            logger.setLevel(level)
            logger.propagate = False
            for handler in handlers:
                logger.addHandler(handler)
    return [logging.getLogger(name) for name in logger_names]
