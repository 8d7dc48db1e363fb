"""
Logging setup for the hostplay command line tools.

Library modules only create loggers; handlers are installed here, once,
by the CLI.
"""

import logging
from typing import Optional

TRACE = 5
logging.addLevelName(TRACE, 'TRACE')

LEVELS = {
    0: logging.WARNING,
    1: logging.INFO,
    2: logging.DEBUG,
}

FORMAT = "%(levelname)s [%(name)s] %(message)s"
DEBUG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(funcName)s:%(lineno)d %(message)s"


def level_for(verbosity: int) -> int:
    """Map -v count to a logging level."""
    if verbosity >= 3:
        return TRACE
    return LEVELS.get(max(0, verbosity), logging.WARNING)


def configure_logging(verbosity: int = 0, log_file: Optional[str] = None) -> logging.Logger:
    """Attach a stderr (or file) handler to the ``hostplay`` logger."""
    level = level_for(verbosity)
    handler: logging.Handler
    if log_file:
        handler = logging.FileHandler(log_file, encoding='utf-8')
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(DEBUG_FORMAT if level <= logging.DEBUG else FORMAT))

    logger = logging.getLogger('hostplay')
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
    logger.addHandler(handler)
    logger.setLevel(level)
    return logger
