"""
docsync - Sync Orchestrator
===========================

Keeps every active source under watch and turns new or changed remote
files into conversion jobs.

- one MonitorRecord per monitored source: its connector, last check time
  and optional change watch
- a scheduler loop runs every SYNC_INTERVAL_MINUTES and spawns one
  independent sync pass per monitor; a source whose previous pass is
  still running is skipped for that tick
- a sync pass lists the source, filters by extension and exclusion
  patterns, skips files whose converted checksum matches or that already
  have an active job, downloads the rest and enqueues a job for each

Failures are recorded as SyncLogs. An authentication failure during a
pass puts the source in error state and stops monitoring it.
"""

import asyncio
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from docsync.core.config import Settings, settings
from docsync.db.models import ConversionJob, JobStatus, LogStatus, Source, SourceStatus, SyncAction, SyncLog, utcnow
from docsync.db.repository import IdLike, Registry
from docsync.processors.registry import ConverterRegistry
from docsync.services.base import (
    AuthError,
    BaseService,
    DownloadError,
    JobStateError,
    NotFoundError,
    ServiceException,
    ValidationError,
)
from docsync.services.connectors.base import BaseConnector, RemoteEntry, WatchHandle
from docsync.services.connectors.registry import create_connector
from docsync.services.encryption import CredentialCipher, get_cipher
from docsync.services.queue import ConversionQueue
from docsync.services.sources import ConnectorFactory, connector_for_source
from docsync.utils.async_helpers import cancel_and_wait, create_safe_task

CANCELLED_MESSAGE = "Cancelled by user"


@dataclass
class MonitorRecord:
    """Runtime state for one monitored source."""
    source: Source
    connector: BaseConnector
    last_check_time: Optional[datetime] = None
    watch_handle: Optional[WatchHandle] = None

    @property
    def source_id(self) -> str:
        return str(self.source.id)


@dataclass
class SyncSummary:
    """Counts for one sync pass."""
    source_id: str
    listed: int = 0
    matched: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    job_ids: List[str] = field(default_factory=list)


def matches_filters(source: Source, entry: RemoteEntry, default_extensions: Optional[List[str]] = None) -> bool:
    """Extension allow-list (case-insensitive) and exclusion regexes searched in the name."""
    name = entry.name.lower()
    extensions = source.extensions or default_extensions or []
    if not any(name.endswith(ext.lower()) for ext in extensions):
        return False
    for pattern in source.exclude_patterns or []:
        if re.search(pattern, entry.name):
            return False
    return True


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SyncOrchestrator(BaseService):
    """
    Drives monitoring, scheduled sync passes and job control.

    Usage:
        orchestrator = SyncOrchestrator(registry, queue)
        await orchestrator.start()
        ...
        await orchestrator.stop()
    """

    def __init__(
        self,
        registry: Registry,
        queue: ConversionQueue,
        cipher: Optional[CredentialCipher] = None,
        connector_factory: ConnectorFactory = create_connector,
        config: Optional[Settings] = None,
    ):
        super().__init__()
        self.registry = registry
        self.queue = queue
        self.cipher = cipher or get_cipher()
        self.connector_factory = connector_factory
        self.config = config or settings

        self._monitors: Dict[str, MonitorRecord] = {}
        self._passes: Dict[str, asyncio.Task] = {}
        self._pass_locks: Dict[str, asyncio.Lock] = {}
        self._scheduler_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def interval_seconds(self) -> float:
        return self.config.SYNC_INTERVAL_MINUTES * 60

    def is_monitoring(self, source_id: IdLike) -> bool:
        return str(source_id) in self._monitors

    def get_monitor(self, source_id: IdLike) -> Optional[MonitorRecord]:
        return self._monitors.get(str(source_id))

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Monitor every active source, then start the scheduler loop."""
        if self._running:
            return
        self._running = True
        self._shutdown_event.clear()

        sources = await self.registry.list_sources(status=SourceStatus.ACTIVE)
        started = 0
        for source in sources:
            if await self.start_monitoring(source):
                started += 1

        self._scheduler_task = create_safe_task(self._scheduler_loop(), name="sync_scheduler")
        self.log_info(
            "Sync orchestrator started",
            active_sources=len(sources),
            monitors=started,
            interval_minutes=self.config.SYNC_INTERVAL_MINUTES,
        )

    async def stop(self) -> None:
        """Stop scheduling and monitoring. Jobs already queued keep running."""
        if not self._running:
            return
        self._running = False
        self._shutdown_event.set()
        await cancel_and_wait(self._scheduler_task)
        self._scheduler_task = None

        for task in list(self._passes.values()):
            await cancel_and_wait(task)
        self._passes.clear()

        for source_id in list(self._monitors):
            await self.stop_monitoring(source_id)
        self.log_info("Sync orchestrator stopped")

    async def _scheduler_loop(self) -> None:
        while not self._shutdown_event.is_set():
            self._schedule_passes()
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    def _schedule_passes(self) -> None:
        for source_id in list(self._monitors):
            self._schedule_pass(source_id)

    def _schedule_pass(self, source_id: str, entries: Optional[List[RemoteEntry]] = None) -> bool:
        """Spawn a sync pass unless one is already running for the source."""
        current = self._passes.get(source_id)
        if current is not None and not current.done():
            self.log_debug("Sync pass still running, skipping", source_id=source_id)
            return False

        def forget(task: asyncio.Task) -> None:
            if self._passes.get(source_id) is task:
                del self._passes[source_id]

        self._passes[source_id] = create_safe_task(
            self._run_pass(source_id, entries),
            name=f"sync_{source_id}",
            on_done=forget,
        )
        return True

    async def _run_pass(self, source_id: str, entries: Optional[List[RemoteEntry]] = None) -> None:
        record = self._monitors.get(source_id)
        if record is None:
            return
        source = await self.registry.get_source(source_id)
        if source is None or source.status != SourceStatus.ACTIVE:
            await self.stop_monitoring(source_id)
            return
        record.source = source
        try:
            await self._sync_pass(source, record.connector, entries)
        except ServiceException as e:
            # Already logged against the source
            self.log_warning("Sync pass aborted", source_id=source_id, error=e.message)
        except Exception as e:
            self.log_error("Sync pass crashed", error=e, source_id=source_id)
        finally:
            record.last_check_time = utcnow()

    # =========================================================================
    # Monitors
    # =========================================================================

    async def start_monitoring(self, source: Union[Source, IdLike]) -> bool:
        """
        Connect to a source and register a monitor for it.

        Returns False (after logging) when the connection test fails.
        """
        if not isinstance(source, Source):
            source = await self.registry.get_source_or_raise(source)
        source_id = str(source.id)
        if source_id in self._monitors:
            return True

        try:
            connector = connector_for_source(source, self.cipher, self.connector_factory, self.config)
        except ServiceException as e:
            await self.registry.set_source_status(source.id, SourceStatus.ERROR)
            await self.registry.append_log(
                source.id,
                SyncAction.MONITOR_START,
                LogStatus.ERROR,
                f"Cannot build connector: {e.message}",
                details={"error_code": e.code},
            )
            self.log_warning("Monitor not started", source_id=source_id, error=e.message)
            return False

        result = await connector.test_connection()
        if not result.ok:
            await connector.release()
            if result.error_code == "auth_error":
                await self.registry.set_source_status(source.id, SourceStatus.ERROR)
            await self.registry.append_log(
                source.id,
                SyncAction.MONITOR_START,
                LogStatus.ERROR,
                f"Connection test failed: {result.message}",
                details={"error_code": result.error_code},
            )
            self.log_warning("Monitor not started", source_id=source_id, error=result.message)
            return False

        record = MonitorRecord(source=source, connector=connector)
        if self.config.WATCH_ENABLED:
            record.watch_handle = connector.watch_for_changes(
                source.source_path,
                lambda changed: self._on_changes(source_id, changed),
                interval=self.config.WATCH_INTERVAL_SECONDS,
            )
        self._monitors[source_id] = record

        await self.registry.append_log(
            source.id,
            SyncAction.MONITOR_START,
            LogStatus.SUCCESS,
            f"Started monitoring {source.name}",
            details={"platform": source.platform.value, "watch": record.watch_handle is not None},
        )
        self.log_info("Monitoring started", source_id=source_id, platform=source.platform.value)
        return True

    async def stop_monitoring(self, source_id: IdLike, reason: Optional[str] = None) -> bool:
        """Cancel the watch, release the connector and drop the monitor."""
        record = self._monitors.pop(str(source_id), None)
        if record is None:
            return False

        if record.watch_handle is not None:
            await record.watch_handle.stop()
        await record.connector.release()

        if await self.registry.get_source(record.source.id) is not None:
            await self.registry.append_log(
                record.source.id,
                SyncAction.MONITOR_STOP,
                LogStatus.SUCCESS,
                reason or f"Stopped monitoring {record.source.name}",
            )
        self.log_info("Monitoring stopped", source_id=str(source_id), reason=reason)
        return True

    def _on_changes(self, source_id: str, changed: List[RemoteEntry]) -> None:
        # A running pass will see the same files on its next tick
        self._schedule_pass(source_id, changed)

    # =========================================================================
    # Sync passes
    # =========================================================================

    async def sync_source(self, source_id: IdLike) -> SyncSummary:
        """
        Run one sync pass now and wait for it.

        Waits for a pass already running for the source instead of overlapping
        it. Unmonitored sources get a throwaway connector released afterwards.
        """
        source = await self.registry.get_source_or_raise(source_id)
        record = self._monitors.get(str(source.id))
        if record is not None:
            summary = await self._sync_pass(source, record.connector)
            record.last_check_time = utcnow()
            return summary

        connector = connector_for_source(source, self.cipher, self.connector_factory, self.config)
        try:
            return await self._sync_pass(source, connector)
        finally:
            await connector.release()

    async def trigger_sync(self, source_id: IdLike) -> bool:
        """
        Start a pass in the background. Returns False when a pass for the
        source is already running.
        """
        source = await self.registry.get_source_or_raise(source_id)
        key = str(source.id)
        if key in self._monitors:
            return self._schedule_pass(key)

        current = self._passes.get(key)
        if current is not None and not current.done():
            return False

        def forget(task: asyncio.Task) -> None:
            if self._passes.get(key) is task:
                del self._passes[key]

        self._passes[key] = create_safe_task(self.sync_source(key), name=f"sync_{key}", on_done=forget)
        return True

    async def _sync_pass(
        self,
        source: Source,
        connector: BaseConnector,
        entries: Optional[List[RemoteEntry]] = None,
    ) -> SyncSummary:
        lock = self._pass_locks.setdefault(str(source.id), asyncio.Lock())
        if lock.locked():
            self.log_debug("Waiting for running sync pass", source_id=str(source.id))
        async with lock:
            return await self._sync_pass_locked(source, connector, entries)

    async def _sync_pass_locked(
        self,
        source: Source,
        connector: BaseConnector,
        entries: Optional[List[RemoteEntry]],
    ) -> SyncSummary:
        summary = SyncSummary(source_id=str(source.id))
        self.log_info("Sync pass started", source_id=summary.source_id, name=source.name)

        try:
            if entries is None:
                entries = await connector.list_entries(source.source_path)
        except AuthError as e:
            await self._handle_auth_failure(source, e)
            raise
        except ServiceException as e:
            await self.registry.append_log(
                source.id,
                SyncAction.SYNC,
                LogStatus.ERROR,
                f"Sync failed: {e.message}",
                details={"error_code": e.code},
            )
            raise
        except Exception as e:
            message = str(e) or type(e).__name__
            await self.registry.append_log(
                source.id,
                SyncAction.SYNC,
                LogStatus.ERROR,
                f"Sync failed: {message}",
                details={"error_type": type(e).__name__},
            )
            raise DownloadError(
                f"Listing {source.source_path} failed: {message}",
                details={"source_id": summary.source_id},
            ) from e

        summary.listed = len(entries)
        candidates = [e for e in entries if matches_filters(source, e, self.config.DEFAULT_EXTENSIONS)]
        summary.matched = len(candidates)

        for entry in candidates:
            try:
                if await self._should_skip(source, entry):
                    summary.skipped += 1
                    continue
                job = await self._download_and_enqueue(source, connector, entry)
                summary.processed += 1
                summary.job_ids.append(str(job.id))
            except AuthError as e:
                await self._handle_auth_failure(source, e)
                raise
            except Exception as e:
                summary.failed += 1
                message = getattr(e, "message", None) or str(e) or type(e).__name__
                self.log_warning("File processing failed", source_id=summary.source_id, file_name=entry.name, error=message)
                await self.registry.append_log(
                    source.id,
                    SyncAction.FILE_PROCESS,
                    LogStatus.ERROR,
                    f"Failed to process {entry.name}: {message}",
                    details={"remote_id": entry.id, "remote_path": entry.path},
                )

        await self.registry.mark_synced(source.id)
        await self.registry.append_log(
            source.id,
            SyncAction.SYNC,
            LogStatus.SUCCESS,
            f"Sync completed: processed {summary.processed} files",
            details={
                "listed": summary.listed,
                "matched": summary.matched,
                "skipped": summary.skipped,
                "failed": summary.failed,
            },
        )
        self.log_info(
            "Sync pass finished",
            source_id=summary.source_id,
            processed=summary.processed,
            skipped=summary.skipped,
            failed=summary.failed,
        )
        return summary

    async def _should_skip(self, source: Source, entry: RemoteEntry) -> bool:
        if await self.registry.find_active_job(source.id, entry.path) is not None:
            return True

        converted = await self.registry.get_converted_file(entry.path, source.platform)
        if converted is None:
            return False
        if entry.checksum:
            return converted.checksum == entry.checksum
        # No checksum from the platform; fall back to modification time
        updated_at = _as_utc(converted.updated_at)
        modified = _as_utc(entry.modified_time)
        return bool(updated_at and modified and modified <= updated_at)

    async def _download_and_enqueue(
        self,
        source: Source,
        connector: BaseConnector,
        entry: RemoteEntry,
    ) -> ConversionJob:
        temp_path = await connector.fetch_entry(entry.id, self.config.temp_dir)
        job = await self.registry.create_job(
            source.id,
            entry.name,
            remote_id=entry.id,
            remote_path=entry.path,
            remote_checksum=entry.checksum,
            temp_path=str(temp_path),
            file_size=entry.size,
        )
        await self.queue.enqueue(job.id)
        return job

    async def _handle_auth_failure(self, source: Source, error: AuthError) -> None:
        self.log_warning("Authentication failed during sync", source_id=str(source.id), error=error.message)
        await self.registry.set_source_status(source.id, SourceStatus.ERROR)
        await self.registry.append_log(
            source.id,
            SyncAction.SYNC,
            LogStatus.ERROR,
            f"Authentication failed: {error.message}",
            details={"error_code": error.code},
        )
        await self.stop_monitoring(source.id, reason="Monitoring stopped after authentication failure")

    # =========================================================================
    # Status and logs
    # =========================================================================

    async def get_status(self) -> Dict[str, Any]:
        last_sync = await self.registry.last_sync_time()
        return {
            "running": self._running,
            "active_monitor_count": len(self._monitors),
            "total_active_sources": await self.registry.count_sources(SourceStatus.ACTIVE),
            "last_sync_time": last_sync.isoformat() if last_sync else None,
            "queue": self.queue.get_stats(),
            "monitors": [
                {
                    "source_id": record.source_id,
                    "name": record.source.name,
                    "platform": record.source.platform.value,
                    "last_check_time": record.last_check_time.isoformat() if record.last_check_time else None,
                    "watching": bool(record.watch_handle and record.watch_handle.active),
                }
                for record in self._monitors.values()
            ],
        }

    async def get_logs(self, source_id: Optional[IdLike] = None, limit: int = 50) -> List[SyncLog]:
        return await self.registry.list_logs(source_id=source_id, limit=limit)

    # =========================================================================
    # Job control
    # =========================================================================

    async def create_manual_job(self, source_id: IdLike, file_ref: Union[str, RemoteEntry]) -> ConversionJob:
        """
        Convert one remote file on request, bypassing the source filters.

        file_ref is a RemoteEntry or a remote id, path or name.

        Raises:
            NotFoundError: source or remote file not found
            ValidationError: the file format has no converter
        """
        source = await self.registry.get_source_or_raise(source_id)
        record = self._monitors.get(str(source.id))
        connector = record.connector if record is not None else connector_for_source(
            source, self.cipher, self.connector_factory, self.config
        )
        try:
            entry = file_ref if isinstance(file_ref, RemoteEntry) else await self._find_entry(source, connector, file_ref)
            if not ConverterRegistry.is_supported(entry.extension):
                raise ValidationError(f"Unsupported file format: {entry.extension or entry.name}", field="file_ref")

            existing = await self.registry.find_active_job(source.id, entry.path)
            if existing is not None:
                return existing

            job = await self._download_and_enqueue(source, connector, entry)
        finally:
            if record is None:
                await connector.release()

        await self.registry.append_log(
            source.id,
            SyncAction.FILE_PROCESS,
            LogStatus.IN_PROGRESS,
            f"Manual conversion queued for {entry.name}",
            details={"job_id": str(job.id)},
        )
        return job

    async def _find_entry(self, source: Source, connector: BaseConnector, ref: str) -> RemoteEntry:
        for entry in await connector.list_entries(source.source_path):
            if ref in (entry.id, entry.path, entry.name):
                return entry
        raise NotFoundError("RemoteEntry", ref)

    async def retry_job(self, job_id: IdLike) -> ConversionJob:
        """
        Create and enqueue a new job for the same file as a failed job.

        Raises:
            JobStateError: the job is not failed
        """
        job = await self.registry.get_job_or_raise(job_id)
        if job.status != JobStatus.FAILED:
            raise JobStateError(
                "Only failed jobs can be retried",
                current=job.status.value,
                details={"job_id": str(job.id)},
            )
        temp_path = job.temp_path if job.temp_path and Path(job.temp_path).is_file() else None
        new_job = await self.registry.create_job(
            job.source_id,
            job.file_name,
            remote_id=job.remote_id,
            remote_path=job.remote_path,
            remote_checksum=job.remote_checksum,
            temp_path=temp_path,
            file_size=job.file_size,
            retry_of_id=job.id,
        )
        await self.queue.enqueue(new_job.id)
        self.log_info("Job retried", job_id=str(job.id), new_job_id=str(new_job.id))
        return new_job

    async def cancel_job(self, job_id: IdLike) -> ConversionJob:
        """
        Fail a pending or processing job with "Cancelled by user".

        A pending job moves through processing so the lifecycle stays linear.

        Raises:
            JobStateError: the job already finished
        """
        for _ in range(3):
            job = await self.registry.get_job_or_raise(job_id)
            if job.status == JobStatus.PENDING:
                try:
                    await self.registry.transition_job(job.id, JobStatus.PROCESSING)
                except JobStateError:
                    continue
            elif job.status != JobStatus.PROCESSING:
                raise JobStateError(
                    "Only pending or processing jobs can be cancelled",
                    current=job.status.value,
                    details={"job_id": str(job.id)},
                )
            try:
                cancelled = await self.registry.transition_job(
                    job.id,
                    JobStatus.FAILED,
                    error_message=CANCELLED_MESSAGE,
                )
            except JobStateError:
                continue

            await self.registry.append_log(
                cancelled.source_id,
                SyncAction.FILE_PROCESS,
                LogStatus.WARNING,
                f"Cancelled conversion of {cancelled.file_name}",
                details={"job_id": str(cancelled.id)},
            )
            self.log_info("Job cancelled", job_id=str(cancelled.id))
            return cancelled

        raise JobStateError("Job status changed while cancelling", details={"job_id": str(job_id)})

    # =========================================================================
    # Re-fetch for the conversion stage
    # =========================================================================

    async def fetch_for_job(self, job: ConversionJob) -> Path:
        """Download a job's remote file again. Used when its temp file is gone."""
        if not job.remote_id:
            raise DownloadError("Job has no remote reference to re-fetch", details={"job_id": str(job.id)})

        record = self._monitors.get(str(job.source_id))
        if record is not None:
            return await record.connector.fetch_entry(job.remote_id, self.config.temp_dir)

        source = await self.registry.get_source_or_raise(job.source_id)
        connector = connector_for_source(source, self.cipher, self.connector_factory, self.config)
        try:
            return await connector.fetch_entry(job.remote_id, self.config.temp_dir)
        finally:
            await connector.release()
