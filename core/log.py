import sys
from loguru import logger as loguru_logger

from core.config import settings


def initialize_logger():
    """Route loguru output to stderr at the configured level."""
    loguru_logger.remove()

    if settings.DEV_MODE:
        loguru_logger.add(sys.stderr, level="TRACE")
    else:
        loguru_logger.add(sys.stderr, level=settings.LOG_LEVEL)

    return loguru_logger


logger = initialize_logger()
