"""
Utility modules for the ingestion service.
"""

from .formatting import format_age, format_currency, format_percent
from .config import Config
from .log import configure_logging

__all__ = ["format_age", "format_currency", "format_percent", "Config", "configure_logging"]
