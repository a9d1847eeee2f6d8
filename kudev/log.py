"""Logging setup for the kudev CLI."""

import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """
    Configure root logging and return the kudev package logger.

    Library components never call this; they take an injected logger or fall
    back to their module logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ...)

    Returns:
        The "kudev" logger
    """
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, force=True)
    # The Kubernetes client logs every request at DEBUG
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    return logging.getLogger("kudev")
