"""Logging setup for processes embedding gameserver_manager."""

import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger with the standard format.

    Args:
        level: Log level name, e.g. "DEBUG" or "INFO". Unknown names fall back to INFO.
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    # Build output and HTTP chatter from the Docker SDK is noisy at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)
