"""
docsync - Database Module
=========================

Models, engine/session management and the Registry repository.
"""

from docsync.db.models import (
    Base,
    Platform,
    Source,
    SourceStatus,
    ConversionJob,
    JobStatus,
    SyncLog,
    LogStatus,
    SyncAction,
    ConvertedFile,
)

__all__ = [
    "Base",
    "Platform",
    "Source",
    "SourceStatus",
    "ConversionJob",
    "JobStatus",
    "SyncLog",
    "LogStatus",
    "SyncAction",
    "ConvertedFile",
]
