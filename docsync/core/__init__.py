"""
docsync - Core Module
=====================

Configuration and logging for the sync service.
"""

from docsync.core.config import settings, get_settings, validate_startup

__all__ = [
    "settings",
    "get_settings",
    "validate_startup",
]
