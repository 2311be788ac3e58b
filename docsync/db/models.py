"""
docsync - SQLAlchemy Models
===========================

Sources, conversion jobs, the sync audit log and the converted-file index.
Uses SQLAlchemy 2.0 with async support; portable column types keep the
schema usable on PostgreSQL and SQLite alike.
"""

import json
import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    BigInteger,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import CHAR, TypeEngine


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Database-agnostic Type Decorators
# =============================================================================

class GUID(TypeDecorator):
    """Platform-independent GUID type.

    Uses PostgreSQL's UUID type when available, otherwise uses
    CHAR(36) for SQLite/other databases.
    """
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect) -> TypeEngine:
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None or dialect.name == 'postgresql':
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


class JSONType(TypeDecorator):
    """Platform-independent JSON type.

    Uses PostgreSQL's JSONB when available, otherwise uses Text with JSON serialization.
    """
    impl = Text
    cache_ok = True

    def load_dialect_impl(self, dialect) -> TypeEngine:
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(JSONB)
        return dialect.type_descriptor(Text())

    def process_bind_param(self, value, dialect):
        if value is None or dialect.name == 'postgresql':
            return value
        return json.dumps(value)

    def process_result_value(self, value, dialect):
        if value is None or dialect.name == 'postgresql':
            return value
        return json.loads(value)


# =============================================================================
# Enums
# =============================================================================

class Platform(str, PyEnum):
    """Remote storage platform. Closed set; one connector variant each."""
    SHAREPOINT = "sharepoint"
    ONEDRIVE = "onedrive"
    GOOGLE_DRIVE = "googledrive"


class SourceStatus(str, PyEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


class JobStatus(str, PyEnum):
    """Conversion job status."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class LogStatus(str, PyEnum):
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"
    IN_PROGRESS = "in_progress"


class SyncAction(str, PyEnum):
    """Audit action tags written to SyncLog."""
    MONITOR_START = "monitor_start"
    MONITOR_STOP = "monitor_stop"
    SYNC = "sync"
    FILE_PROCESS = "file_process"
    TEST_CONNECTION = "test_connection"
    EXPORT = "export"


# Linear lifecycle: pending -> processing -> completed | failed
ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}

TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED}
ACTIVE_STATUSES = {JobStatus.PENDING, JobStatus.PROCESSING}


# =============================================================================
# Base Model
# =============================================================================

class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class UUIDMixin:
    """Mixin for UUID primary key."""
    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


# =============================================================================
# Models
# =============================================================================

class Source(Base, UUIDMixin, TimestampMixin):
    """
    A configured remote folder or drive to monitor.

    ``credentials`` only ever holds a cipher blob; plaintext secrets never
    reach this table.
    """
    __tablename__ = "sources"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    platform: Mapped[Platform] = mapped_column(Enum(Platform), nullable=False, index=True)
    credentials: Mapped[str] = mapped_column(Text, nullable=False)
    source_path: Mapped[str] = mapped_column(String(1000), nullable=False, default="/")
    site_url: Mapped[Optional[str]] = mapped_column(String(1000))
    drive_owner: Mapped[Optional[str]] = mapped_column(String(255))
    destinations: Mapped[list] = mapped_column(JSONType(), nullable=False, default=list)
    extensions: Mapped[list] = mapped_column(JSONType(), nullable=False, default=list)
    exclude_patterns: Mapped[list] = mapped_column(JSONType(), nullable=False, default=list)
    status: Mapped[SourceStatus] = mapped_column(
        Enum(SourceStatus),
        default=SourceStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Relationships
    jobs: Mapped[List["ConversionJob"]] = relationship(
        "ConversionJob",
        back_populates="source",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    logs: Mapped[List["SyncLog"]] = relationship(
        "SyncLog",
        back_populates="source",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Source(name='{self.name}', platform='{self.platform}', status='{self.status}')>"


class ConversionJob(Base, UUIDMixin):
    """
    One attempt to convert one discovered file.

    Mutated only by the queue worker executing it. A retry creates a new
    row pointing back at this one through ``retry_of_id``.
    """
    __tablename__ = "conversion_jobs"

    source_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("sources.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    remote_id: Mapped[Optional[str]] = mapped_column(String(500))
    remote_path: Mapped[Optional[str]] = mapped_column(String(2000))
    remote_checksum: Mapped[Optional[str]] = mapped_column(String(255))
    temp_path: Mapped[Optional[str]] = mapped_column(String(2000))
    output_path: Mapped[Optional[str]] = mapped_column(String(2000))
    file_size: Mapped[Optional[int]] = mapped_column(BigInteger)
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus),
        default=JobStatus.PENDING,
        nullable=False,
        index=True,
    )
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    retry_of_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID())

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    source: Mapped["Source"] = relationship("Source", back_populates="jobs")

    __table_args__ = (
        Index("idx_jobs_source_remote", "source_id", "remote_path"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<ConversionJob(file='{self.file_name}', status='{self.status}', progress={self.progress})>"


class SyncLog(Base, UUIDMixin):
    """Append-only audit record of an orchestration action."""
    __tablename__ = "sync_logs"

    source_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("sources.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[LogStatus] = mapped_column(Enum(LogStatus), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    details: Mapped[Optional[dict]] = mapped_column(JSONType())
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True,
    )

    source: Mapped["Source"] = relationship("Source", back_populates="logs")

    def __repr__(self) -> str:
        return f"<SyncLog(action='{self.action}', status='{self.status}')>"


class ConvertedFile(Base, UUIDMixin, TimestampMixin):
    """
    Index of the last successful conversion per remote file.

    ``checksum`` is the remote content checksum observed when the job was
    created; the sync pass compares it against the listing to decide
    whether a file changed.
    """
    __tablename__ = "converted_files"

    original_path: Mapped[str] = mapped_column(String(2000), nullable=False)
    platform: Mapped[Platform] = mapped_column(Enum(Platform), nullable=False)
    remote_id: Mapped[Optional[str]] = mapped_column(String(500))
    source_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID(), index=True)
    converted_path: Mapped[str] = mapped_column(String(2000), nullable=False)
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    format: Mapped[str] = mapped_column(String(20), nullable=False)
    checksum: Mapped[Optional[str]] = mapped_column(String(255))
    output_checksum: Mapped[Optional[str]] = mapped_column(String(64))

    __table_args__ = (
        UniqueConstraint("original_path", "platform", name="uq_converted_path_platform"),
    )

    def __repr__(self) -> str:
        return f"<ConvertedFile(path='{self.original_path}', platform='{self.platform}')>"
