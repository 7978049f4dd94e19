# =============================================
# File: bazaar/utils/logging.py
# Purpose: Logging configuration (loguru sinks)
# =============================================
import os
import sys

from loguru import logger

_configured = False


def configure_logging() -> None:
    """Install the stderr sink at LOG_LEVEL and, when LOG_FILE is set, a rotating file sink."""
    global _configured
    if _configured:
        return
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logger.remove()
    logger.add(sys.stderr, level=level)
    log_file = os.getenv("LOG_FILE")
    if log_file:
        logger.add(log_file, rotation="10 MB", level=level)
    _configured = True
