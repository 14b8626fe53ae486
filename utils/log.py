"""
Logging setup.
"""

import logging

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """
    Configure root logging once for the process.

    Args:
        level: Level name such as "INFO" or "DEBUG". Unknown names fall back to INFO.
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO

    logging.basicConfig(level=numeric, format=LOG_FORMAT)
    logging.getLogger().setLevel(numeric)

    # requests/urllib3 log every connection at DEBUG
    logging.getLogger("urllib3").setLevel(max(numeric, logging.WARNING))
