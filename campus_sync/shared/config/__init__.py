"""
Configuration module: Settings and logging.
"""

from campus_sync.shared.config.settings import Settings, get_settings, settings
from campus_sync.shared.config.logging import get_logger, setup_logging

__all__ = [
    # settings
    "Settings",
    "get_settings",
    "settings",
    # logging
    "get_logger",
    "setup_logging",
]
