"""
docsync - Registry
==================

Durable store for sources, conversion jobs, sync logs and the
converted-file index. Every public call runs in its own short session so
concurrent sync passes and queue workers never share a transaction.

Job status changes go through transition_job(), which enforces the
pending -> processing -> completed|failed lifecycle with a compare-and-set
update so two writers can never both move the same job.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import delete, desc, func, select, update
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docsync.db.database import async_session_context, get_async_session_factory
from docsync.db.models import (
    ACTIVE_STATUSES,
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    ConversionJob,
    ConvertedFile,
    JobStatus,
    LogStatus,
    Platform,
    Source,
    SourceStatus,
    SyncLog,
    utcnow,
)
from docsync.services.base import BaseService, JobStateError, NotFoundError, ValidationError

IdLike = Union[str, uuid.UUID]

# Columns a caller may never set through update_job()
_JOB_PROTECTED_FIELDS = {"id", "status", "source_id", "created_at", "started_at", "completed_at"}


class Registry(BaseService):
    """Repository over the four pipeline tables."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        super().__init__()
        self._session_factory = session_factory

    def session(self):
        return async_session_context(self._session_factory or get_async_session_factory())

    # =========================================================================
    # Sources
    # =========================================================================

    async def create_source(self, **fields: Any) -> Source:
        fields.setdefault("id", uuid.uuid4())
        async with self.session() as session:
            source = Source(**fields)
            session.add(source)
        self.log_info("Source created", source_id=str(source.id), platform=source.platform.value)
        return source

    async def get_source(self, source_id: IdLike) -> Optional[Source]:
        source_id = self.validate_uuid(source_id, "source_id")
        async with self.session() as session:
            return await session.get(Source, source_id)

    async def get_source_or_raise(self, source_id: IdLike) -> Source:
        source = await self.get_source(source_id)
        if source is None:
            raise NotFoundError("Source", source_id)
        return source

    async def list_sources(
        self,
        status: Optional[SourceStatus] = None,
        platform: Optional[Platform] = None,
    ) -> List[Source]:
        query = select(Source).order_by(Source.created_at)
        if status is not None:
            query = query.where(Source.status == status)
        if platform is not None:
            query = query.where(Source.platform == platform)
        async with self.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def count_sources(self, status: Optional[SourceStatus] = None) -> int:
        query = select(func.count(Source.id))
        if status is not None:
            query = query.where(Source.status == status)
        async with self.session() as session:
            return (await session.execute(query)).scalar() or 0

    async def update_source(self, source_id: IdLike, **fields: Any) -> Source:
        source_id = self.validate_uuid(source_id, "source_id")
        async with self.session() as session:
            source = await session.get(Source, source_id)
            if source is None:
                raise NotFoundError("Source", source_id)
            for field, value in fields.items():
                if not hasattr(Source, field) or field in ("id", "created_at"):
                    raise ValidationError(f"Unknown source field: {field}", field=field)
                setattr(source, field, value)
        return source

    async def set_source_status(self, source_id: IdLike, status: SourceStatus) -> Source:
        return await self.update_source(source_id, status=status)

    async def mark_synced(self, source_id: IdLike, when: Optional[datetime] = None) -> Source:
        return await self.update_source(source_id, last_sync_at=when or utcnow())

    async def last_sync_time(self) -> Optional[datetime]:
        async with self.session() as session:
            return (await session.execute(select(func.max(Source.last_sync_at)))).scalar()

    async def delete_source(self, source_id: IdLike) -> bool:
        """Delete a source with its jobs and logs. Converted outputs stay on disk."""
        source_id = self.validate_uuid(source_id, "source_id")
        async with self.session() as session:
            source = await session.get(Source, source_id)
            if source is None:
                raise NotFoundError("Source", source_id)
            await session.execute(delete(ConversionJob).where(ConversionJob.source_id == source_id))
            await session.execute(delete(SyncLog).where(SyncLog.source_id == source_id))
            await session.delete(source)
        self.log_info("Source deleted", source_id=str(source_id))
        return True

    # =========================================================================
    # Conversion jobs
    # =========================================================================

    async def create_job(
        self,
        source_id: IdLike,
        file_name: str,
        remote_id: Optional[str] = None,
        remote_path: Optional[str] = None,
        remote_checksum: Optional[str] = None,
        temp_path: Optional[str] = None,
        file_size: Optional[int] = None,
        retry_of_id: Optional[uuid.UUID] = None,
    ) -> ConversionJob:
        job = ConversionJob(
            id=uuid.uuid4(),
            source_id=self.validate_uuid(source_id, "source_id"),
            file_name=file_name,
            remote_id=remote_id,
            remote_path=remote_path,
            remote_checksum=remote_checksum,
            temp_path=temp_path,
            file_size=file_size,
            status=JobStatus.PENDING,
            progress=0,
            attempts=0,
            retry_of_id=retry_of_id,
            created_at=utcnow(),
        )
        async with self.session() as session:
            session.add(job)
        self.log_debug("Job created", job_id=str(job.id), file_name=file_name)
        return job

    async def get_job(self, job_id: IdLike) -> Optional[ConversionJob]:
        job_id = self.validate_uuid(job_id, "job_id")
        async with self.session() as session:
            return await session.get(ConversionJob, job_id)

    async def get_job_or_raise(self, job_id: IdLike) -> ConversionJob:
        job = await self.get_job(job_id)
        if job is None:
            raise NotFoundError("ConversionJob", job_id)
        return job

    async def list_jobs(
        self,
        page: int = 1,
        limit: int = 20,
        status: Optional[JobStatus] = None,
        source_id: Optional[IdLike] = None,
    ) -> Tuple[List[ConversionJob], int]:
        """List jobs newest first. Returns (jobs, total)."""
        query = select(ConversionJob)
        if status is not None:
            query = query.where(ConversionJob.status == status)
        if source_id is not None:
            query = query.where(ConversionJob.source_id == self.validate_uuid(source_id, "source_id"))

        async with self.session() as session:
            total = (await session.execute(select(func.count()).select_from(query.subquery()))).scalar() or 0
            query = query.order_by(desc(ConversionJob.created_at)).offset((max(page, 1) - 1) * limit).limit(limit)
            result = await session.execute(query)
            return list(result.scalars().all()), total

    async def find_active_job(self, source_id: IdLike, remote_path: str) -> Optional[ConversionJob]:
        """Pending or processing job for the same remote file, if any."""
        query = (
            select(ConversionJob)
            .where(ConversionJob.source_id == self.validate_uuid(source_id, "source_id"))
            .where(ConversionJob.remote_path == remote_path)
            .where(ConversionJob.status.in_(list(ACTIVE_STATUSES)))
            .limit(1)
        )
        async with self.session() as session:
            return (await session.execute(query)).scalars().first()

    async def transition_job(
        self,
        job_id: IdLike,
        new_status: JobStatus,
        **fields: Any,
    ) -> ConversionJob:
        """
        Move a job to new_status.

        Raises:
            NotFoundError: job does not exist
            JobStateError: the transition is not allowed from the stored status,
                or another writer changed the status first
        """
        job_id = self.validate_uuid(job_id, "job_id")
        async with self.session() as session:
            job = await session.get(ConversionJob, job_id)
            if job is None:
                raise NotFoundError("ConversionJob", job_id)

            current = job.status
            if new_status not in ALLOWED_TRANSITIONS[current]:
                raise JobStateError(
                    f"Cannot move job from {current.value} to {new_status.value}",
                    current=current.value,
                    details={"job_id": str(job_id), "requested": new_status.value},
                )

            values: Dict[str, Any] = {"status": new_status}
            now = utcnow()
            if new_status == JobStatus.PROCESSING:
                values["started_at"] = now
            if new_status in TERMINAL_STATUSES:
                values["completed_at"] = now
            if new_status == JobStatus.COMPLETED:
                values["progress"] = 100
                values["error_message"] = None
            for field, value in fields.items():
                if field in _JOB_PROTECTED_FIELDS:
                    raise ValidationError(f"Field cannot be set during transition: {field}", field=field)
                values[field] = value

            result = await session.execute(
                update(ConversionJob)
                .where(ConversionJob.id == job_id)
                .where(ConversionJob.status == current)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise JobStateError(
                    "Job status changed concurrently",
                    current=current.value,
                    details={"job_id": str(job_id), "requested": new_status.value},
                )
            await session.refresh(job)

        self.log_debug(
            "Job transitioned",
            job_id=str(job_id),
            from_status=current.value,
            to_status=new_status.value,
        )
        return job

    async def update_job_progress(self, job_id: IdLike, progress: int) -> bool:
        """Record progress for a processing job. No-op (False) in any other state."""
        job_id = self.validate_uuid(job_id, "job_id")
        progress = max(0, min(100, int(progress)))
        async with self.session() as session:
            result = await session.execute(
                update(ConversionJob)
                .where(ConversionJob.id == job_id)
                .where(ConversionJob.status == JobStatus.PROCESSING)
                .values(progress=progress)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def update_job(self, job_id: IdLike, **fields: Any) -> ConversionJob:
        """Update non-lifecycle fields (temp_path, output_path, attempts, ...)."""
        job_id = self.validate_uuid(job_id, "job_id")
        bad = set(fields) & _JOB_PROTECTED_FIELDS
        if bad:
            raise ValidationError(f"Use transition_job to change: {', '.join(sorted(bad))}")
        async with self.session() as session:
            job = await session.get(ConversionJob, job_id)
            if job is None:
                raise NotFoundError("ConversionJob", job_id)
            for field, value in fields.items():
                setattr(job, field, value)
        return job

    async def job_stats(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        async with self.session() as session:
            result = await session.execute(
                select(ConversionJob.status, func.count(ConversionJob.id)).group_by(ConversionJob.status)
            )
            for status, count in result.all():
                counts[status.value] = count
        counts["total"] = sum(counts[s.value] for s in JobStatus)
        return counts

    async def cleanup_completed_jobs(self, older_than_days: int = 30) -> int:
        """Delete completed jobs finished more than older_than_days ago."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
        async with self.session() as session:
            result = await session.execute(
                delete(ConversionJob)
                .where(ConversionJob.status == JobStatus.COMPLETED)
                .where(ConversionJob.completed_at < cutoff)
            )
            deleted = result.rowcount or 0
        self.log_info("Cleaned up completed jobs", deleted=deleted, older_than_days=older_than_days)
        return deleted

    # =========================================================================
    # Sync logs
    # =========================================================================

    async def append_log(
        self,
        source_id: IdLike,
        action: str,
        status: LogStatus,
        message: str,
        details: Optional[dict] = None,
    ) -> SyncLog:
        entry = SyncLog(
            id=uuid.uuid4(),
            source_id=self.validate_uuid(source_id, "source_id"),
            action=getattr(action, "value", action),
            status=status,
            message=message,
            details=details,
            created_at=utcnow(),
        )
        async with self.session() as session:
            session.add(entry)
        return entry

    async def list_logs(self, source_id: Optional[IdLike] = None, limit: int = 50) -> List[SyncLog]:
        """Newest first."""
        query = select(SyncLog)
        if source_id is not None:
            query = query.where(SyncLog.source_id == self.validate_uuid(source_id, "source_id"))
        query = query.order_by(desc(SyncLog.created_at)).limit(limit)
        async with self.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    # =========================================================================
    # Converted-file index
    # =========================================================================

    async def get_converted_file(self, original_path: str, platform: Platform) -> Optional[ConvertedFile]:
        async with self.session() as session:
            result = await session.execute(
                select(ConvertedFile)
                .where(ConvertedFile.original_path == original_path)
                .where(ConvertedFile.platform == platform)
            )
            return result.scalars().first()

    async def upsert_converted_file(
        self,
        original_path: str,
        platform: Platform,
        **fields: Any,
    ) -> ConvertedFile:
        """Insert or update the index row keyed by (original_path, platform)."""
        try:
            return await self._upsert_converted_file(original_path, platform, fields)
        except sa_exc.IntegrityError:
            # Lost an insert race for the same key; the row exists now
            return await self._upsert_converted_file(original_path, platform, fields)

    async def _upsert_converted_file(self, original_path: str, platform: Platform, fields: dict) -> ConvertedFile:
        async with self.session() as session:
            result = await session.execute(
                select(ConvertedFile)
                .where(ConvertedFile.original_path == original_path)
                .where(ConvertedFile.platform == platform)
            )
            record = result.scalars().first()
            if record is None:
                record = ConvertedFile(
                    id=uuid.uuid4(),
                    original_path=original_path,
                    platform=platform,
                    **fields,
                )
                session.add(record)
            else:
                for field, value in fields.items():
                    setattr(record, field, value)
                record.updated_at = utcnow()
        return record
