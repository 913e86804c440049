"""Logging setup for hosts and command-line tools embedding kaption."""

import logging

from kaption.config import get_settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str | None = None) -> logging.Logger:
    """Install a console handler on the ``kaption`` logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR); defaults to settings

    Returns:
        The configured ``kaption`` logger
    """
    level_name = (level or get_settings().log_level).upper()
    log_level = logging.getLevelName(level_name)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    logger = logging.getLogger("kaption")
    logger.setLevel(log_level)

    # Replace a handler installed by an earlier call
    for handler in list(logger.handlers):
        if getattr(handler, "_kaption_console", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._kaption_console = True
    logger.addHandler(handler)
    return logger
