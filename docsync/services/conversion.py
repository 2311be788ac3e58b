"""
docsync - Conversion Service
============================

The job handler the conversion queue runs, plus job bookkeeping.

For one job:
1. make sure the downloaded input exists (re-fetch through the source's
   connector when the temp file is gone)
2. pick a converter by extension and convert in a worker thread
3. write the canonical output to STORAGE_PATH/<source_id>/<file name>.md
4. copy it to EXPORT_PATH/<destination>/<file name>.md for every destination

A destination that cannot be written only produces a warning log; the
canonical output is what makes a job successful.
"""

import asyncio
import shutil
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from docsync.core.config import Settings, settings
from docsync.db.models import ConversionJob, JobStatus, LogStatus, Source, SyncAction
from docsync.db.repository import IdLike, Registry
from docsync.processors.registry import ConverterRegistry
from docsync.services.base import (
    BaseService,
    ConversionError,
    DownloadError,
    ServiceException,
)
from docsync.services.queue import JobOutcome, ProgressCallback
from docsync.utils.paths import output_name, resolve_destination

# Re-download a job's input; returns the new local path
Fetcher = Callable[[ConversionJob], Awaitable[Path]]


class ConversionService(BaseService):
    """Runs conversion jobs and records their results."""

    def __init__(
        self,
        registry: Registry,
        config: Optional[Settings] = None,
        fetcher: Optional[Fetcher] = None,
    ):
        super().__init__()
        self.registry = registry
        self.config = config or settings
        self._fetcher = fetcher

    def set_fetcher(self, fetcher: Optional[Fetcher]) -> None:
        self._fetcher = fetcher

    # =========================================================================
    # Job handler
    # =========================================================================

    async def run(self, job: ConversionJob, progress: ProgressCallback) -> JobOutcome:
        self.log_info("Converting file", job_id=str(job.id), file_name=job.file_name)
        await progress(10)

        input_path = await self._ensure_input(job)
        await progress(30)

        converter = ConverterRegistry.get_converter(input_path.suffix or Path(job.file_name).suffix)
        result = await asyncio.to_thread(converter.convert, input_path, job.file_name)
        if not result.success:
            raise ConversionError(result.error or "Conversion failed", details={"file_name": job.file_name})
        await progress(50)

        source = await self.registry.get_source_or_raise(job.source_id)
        name = output_name(job.file_name)
        output_path = self.config.storage_dir / str(job.source_id) / name
        await asyncio.to_thread(_write_text, output_path, result.output_text)
        await progress(80)

        exported = await self._export(source, output_path, name, job)
        self._discard_temp(job)
        await progress(100)

        self.log_info(
            "File converted",
            job_id=str(job.id),
            output_path=str(output_path),
            destinations=len(exported),
            warnings=len(result.warnings),
        )
        return JobOutcome(
            output_path=str(output_path),
            checksum=result.checksum,
            warnings=list(result.warnings),
        )

    async def on_completed(self, job: ConversionJob, outcome: JobOutcome) -> None:
        source = await self.registry.get_source(job.source_id)
        if source is None:
            # Source deleted while the job ran
            return

        await self.registry.upsert_converted_file(
            job.remote_path or job.file_name,
            source.platform,
            remote_id=job.remote_id,
            source_id=source.id,
            converted_path=outcome.output_path or "",
            file_name=job.file_name,
            format=(Path(job.file_name).suffix.lstrip(".") or "unknown").lower(),
            checksum=job.remote_checksum,
            output_checksum=outcome.checksum,
        )
        await self.registry.append_log(
            source.id,
            SyncAction.FILE_PROCESS,
            LogStatus.SUCCESS,
            f"Converted {job.file_name}",
            details={
                "job_id": str(job.id),
                "output_path": outcome.output_path,
                "warnings": outcome.warnings,
            },
        )

    async def on_failed(self, job: ConversionJob, error: str) -> None:
        self._discard_temp(job)
        if await self.registry.get_source(job.source_id) is None:
            return
        await self.registry.append_log(
            job.source_id,
            SyncAction.FILE_PROCESS,
            LogStatus.ERROR,
            f"Failed to convert {job.file_name}: {error}",
            details={"job_id": str(job.id), "attempts": job.attempts},
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _ensure_input(self, job: ConversionJob) -> Path:
        if job.temp_path and Path(job.temp_path).is_file():
            return Path(job.temp_path)

        if self._fetcher is None:
            raise DownloadError(
                "Input file is missing and cannot be re-fetched",
                details={"job_id": str(job.id), "temp_path": job.temp_path},
            )

        self.log_info("Input missing, re-fetching", job_id=str(job.id), remote_id=job.remote_id)
        try:
            path = Path(await self._fetcher(job))
        except ServiceException:
            raise
        except Exception as e:
            raise DownloadError(f"Re-fetch failed: {e}", details={"job_id": str(job.id)}) from e

        await self.registry.update_job(job.id, temp_path=str(path))
        job.temp_path = str(path)
        return path

    async def _export(self, source: Source, output_path: Path, name: str, job: ConversionJob) -> List[str]:
        exported: List[str] = []
        for destination in source.destinations or []:
            try:
                target_dir = resolve_destination(self.config.export_dir, destination)
                target = target_dir / name
                await asyncio.to_thread(_copy_file, output_path, target)
                exported.append(str(target))
            except (ServiceException, OSError) as e:
                message = getattr(e, "message", None) or str(e)
                self.log_warning("Export destination failed", destination=destination, error=message)
                await self.registry.append_log(
                    source.id,
                    SyncAction.EXPORT,
                    LogStatus.WARNING,
                    f"Could not export {job.file_name} to {destination}: {message}",
                    details={"job_id": str(job.id), "destination": destination},
                )
        return exported

    def _discard_temp(self, job: ConversionJob) -> None:
        """Remove a downloaded input that lives under TEMP_PATH."""
        if not job.temp_path:
            return
        path = Path(job.temp_path)
        try:
            if self.config.temp_dir in path.resolve().parents and path.is_file():
                path.unlink()
        except OSError as e:
            self.log_warning("Could not remove temp file", path=str(path), error=str(e))

    # =========================================================================
    # Job bookkeeping
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
        retry_of_id: Any = None,
    ) -> ConversionJob:
        await self.registry.get_source_or_raise(source_id)
        return await self.registry.create_job(
            source_id,
            file_name,
            remote_id=remote_id,
            remote_path=remote_path,
            remote_checksum=remote_checksum,
            temp_path=temp_path,
            file_size=file_size,
            retry_of_id=retry_of_id,
        )

    async def get_job(self, job_id: IdLike) -> ConversionJob:
        return await self.registry.get_job_or_raise(job_id)

    async def list_jobs(
        self,
        page: int = 1,
        limit: int = 20,
        status: Optional[JobStatus] = None,
        source_id: Optional[IdLike] = None,
    ) -> Tuple[List[ConversionJob], int]:
        return await self.registry.list_jobs(page=page, limit=limit, status=status, source_id=source_id)

    async def get_job_stats(self) -> Dict[str, int]:
        return await self.registry.job_stats()

    async def cleanup_completed_jobs(self, older_than_days: int = 30) -> int:
        return await self.registry.cleanup_completed_jobs(older_than_days)


def _write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def _copy_file(src: Path, dest: Path) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(src, dest)
