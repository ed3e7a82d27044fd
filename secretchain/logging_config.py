"""
Logging configuration for SecretChain.

All diagnostics (mining progress, validation, sealing) go to stderr.
stdout is reserved for command output such as a revealed secret.
"""

import logging
import sys
from typing import Optional, TextIO

LOG_FORMAT = "secretchain: %(levelname)s: %(message)s"
DEBUG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO", stream: Optional[TextIO] = None) -> None:
    """
    Configure the "secretchain" logger hierarchy.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        stream: Output stream (default sys.stderr)
    """
    logger = logging.getLogger("secretchain")
    logger.setLevel(getattr(logging, level.upper()))

    # Remove existing handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(DEBUG_FORMAT if level.upper() == "DEBUG" else LOG_FORMAT))
    logger.addHandler(handler)
    logger.propagate = False
