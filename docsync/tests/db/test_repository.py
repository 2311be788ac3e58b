"""
docsync - Registry Tests
========================

Tests for:
- Source CRUD and filtering
- Cascade delete of jobs and logs
- Job lifecycle transitions and the compare-and-set guard
- Progress updates, listing and stats
- Sync log ordering
- Converted-file index upsert
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from docsync.db.models import (
    ConversionJob,
    JobStatus,
    LogStatus,
    Platform,
    SourceStatus,
    SyncAction,
)
from docsync.services.base import JobStateError, NotFoundError, ValidationError


# =============================================================================
# Sources
# =============================================================================

class TestSources:

    async def test_create_and_get(self, registry, make_source):
        source = await make_source(name="Finance")

        loaded = await registry.get_source(source.id)
        assert loaded.name == "Finance"
        assert loaded.platform == Platform.ONEDRIVE
        assert loaded.extensions == [".docx", ".pdf"]
        assert loaded.last_sync_at is None

    async def test_get_accepts_string_ids(self, registry, make_source):
        source = await make_source()
        assert (await registry.get_source(str(source.id))).id == source.id

    async def test_invalid_id_is_validation_error(self, registry):
        with pytest.raises(ValidationError):
            await registry.get_source("not-a-uuid")

    async def test_missing_source(self, registry):
        assert await registry.get_source(uuid.uuid4()) is None
        with pytest.raises(NotFoundError) as exc_info:
            await registry.get_source_or_raise(uuid.uuid4())
        assert exc_info.value.to_dict()["code"] == "NOT_FOUND"
        assert exc_info.value.to_dict()["details"]["resource_type"] == "Source"

    async def test_list_filters(self, registry, make_source):
        await make_source(name="a")
        await make_source(name="b", status=SourceStatus.INACTIVE)
        await make_source(name="c", platform=Platform.GOOGLE_DRIVE)

        assert len(await registry.list_sources()) == 3
        active = await registry.list_sources(status=SourceStatus.ACTIVE)
        assert sorted(s.name for s in active) == ["a", "c"]
        drive = await registry.list_sources(platform=Platform.GOOGLE_DRIVE)
        assert [s.name for s in drive] == ["c"]
        assert await registry.count_sources(SourceStatus.INACTIVE) == 1

    async def test_update_unknown_field(self, registry, make_source):
        source = await make_source()
        with pytest.raises(ValidationError) as exc_info:
            await registry.update_source(source.id, colour="blue")
        assert exc_info.value.details["field"] == "colour"

    async def test_mark_synced_and_last_sync_time(self, registry, make_source):
        assert await registry.last_sync_time() is None
        source = await make_source()
        when = datetime(2024, 6, 1, 9, 30, tzinfo=timezone.utc)

        await registry.mark_synced(source.id, when)
        latest = await registry.last_sync_time()
        assert latest.replace(tzinfo=None) == when.replace(tzinfo=None)

    async def test_delete_cascades(self, registry, make_source):
        source = await make_source()
        other = await make_source(name="other")
        await registry.create_job(source.id, "a.pdf", remote_path="/a.pdf")
        await registry.create_job(other.id, "b.pdf", remote_path="/b.pdf")
        await registry.append_log(source.id, SyncAction.SYNC, LogStatus.SUCCESS, "done")

        assert await registry.delete_source(source.id)

        assert await registry.get_source(source.id) is None
        jobs, total = await registry.list_jobs()
        assert total == 1 and jobs[0].source_id == other.id
        assert await registry.list_logs(source.id) == []

    async def test_delete_missing_source(self, registry):
        with pytest.raises(NotFoundError):
            await registry.delete_source(uuid.uuid4())


# =============================================================================
# Jobs
# =============================================================================

@pytest.fixture
async def job(registry, make_source):
    source = await make_source()
    return await registry.create_job(
        source.id,
        "report.pdf",
        remote_id="r1",
        remote_path="/Documents/report.pdf",
        remote_checksum="abc",
    )


class TestJobLifecycle:

    async def test_new_job_is_pending(self, job):
        assert job.status == JobStatus.PENDING
        assert job.progress == 0
        assert job.attempts == 0

    async def test_full_lifecycle(self, registry, job):
        started = await registry.transition_job(job.id, JobStatus.PROCESSING, attempts=1)
        assert started.status == JobStatus.PROCESSING
        assert started.started_at is not None
        assert started.attempts == 1

        done = await registry.transition_job(job.id, JobStatus.COMPLETED, output_path="/out/report.md")
        assert done.status == JobStatus.COMPLETED
        assert done.progress == 100
        assert done.completed_at is not None
        assert done.output_path == "/out/report.md"
        assert done.is_terminal

    async def test_failure_records_message(self, registry, job):
        await registry.transition_job(job.id, JobStatus.PROCESSING)
        failed = await registry.transition_job(job.id, JobStatus.FAILED, error_message="boom")
        assert failed.error_message == "boom"
        assert failed.completed_at is not None

    @pytest.mark.parametrize("target", [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PENDING])
    async def test_pending_can_only_start(self, registry, job, target):
        with pytest.raises(JobStateError) as exc_info:
            await registry.transition_job(job.id, target)
        assert exc_info.value.details["current_status"] == "pending"

    async def test_terminal_jobs_never_move(self, registry, job):
        await registry.transition_job(job.id, JobStatus.PROCESSING)
        await registry.transition_job(job.id, JobStatus.COMPLETED)
        for target in JobStatus:
            with pytest.raises(JobStateError):
                await registry.transition_job(job.id, target)

    async def test_only_one_writer_can_claim(self, registry, job):
        await registry.transition_job(job.id, JobStatus.PROCESSING)
        with pytest.raises(JobStateError):
            await registry.transition_job(job.id, JobStatus.PROCESSING)

    async def test_protected_fields_rejected(self, registry, job):
        with pytest.raises(ValidationError):
            await registry.transition_job(job.id, JobStatus.PROCESSING, source_id=uuid.uuid4())
        with pytest.raises(ValidationError):
            await registry.update_job(job.id, status=JobStatus.COMPLETED)

    async def test_missing_job(self, registry):
        with pytest.raises(NotFoundError):
            await registry.transition_job(uuid.uuid4(), JobStatus.PROCESSING)


class TestJobProgress:

    async def test_progress_only_while_processing(self, registry, job):
        assert not await registry.update_job_progress(job.id, 40)

        await registry.transition_job(job.id, JobStatus.PROCESSING)
        assert await registry.update_job_progress(job.id, 40)
        assert (await registry.get_job(job.id)).progress == 40

    async def test_progress_is_clamped(self, registry, job):
        await registry.transition_job(job.id, JobStatus.PROCESSING)
        await registry.update_job_progress(job.id, 250)
        assert (await registry.get_job(job.id)).progress == 100

    async def test_update_job_fields(self, registry, job):
        updated = await registry.update_job(job.id, temp_path="/tmp/x.pdf", attempts=2)
        assert updated.temp_path == "/tmp/x.pdf"
        assert updated.attempts == 2


class TestJobQueries:

    async def test_find_active_job(self, registry, job):
        active = await registry.find_active_job(job.source_id, "/Documents/report.pdf")
        assert active.id == job.id
        assert await registry.find_active_job(job.source_id, "/Documents/other.pdf") is None

        await registry.transition_job(job.id, JobStatus.PROCESSING)
        await registry.transition_job(job.id, JobStatus.FAILED, error_message="x")
        assert await registry.find_active_job(job.source_id, "/Documents/report.pdf") is None

    async def test_list_jobs_paginates_newest_first(self, registry, make_source):
        source = await make_source()
        created = [await registry.create_job(source.id, f"f{i}.pdf") for i in range(5)]

        page, total = await registry.list_jobs(page=1, limit=2)
        assert total == 5
        assert [j.id for j in page] == [created[4].id, created[3].id]

        last, _ = await registry.list_jobs(page=3, limit=2)
        assert [j.id for j in last] == [created[0].id]

    async def test_list_jobs_filters(self, registry, job, make_source):
        other = await make_source(name="other")
        await registry.create_job(other.id, "x.pdf")

        _, total = await registry.list_jobs(source_id=job.source_id)
        assert total == 1
        _, processing = await registry.list_jobs(status=JobStatus.PROCESSING)
        assert processing == 0

    async def test_job_stats(self, registry, job):
        await registry.create_job(job.source_id, "second.pdf")
        await registry.transition_job(job.id, JobStatus.PROCESSING)

        stats = await registry.job_stats()
        assert stats == {
            "pending": 1,
            "processing": 1,
            "completed": 0,
            "failed": 0,
            "total": 2,
        }

    async def test_cleanup_completed_jobs(self, registry, job):
        recent = await registry.create_job(job.source_id, "recent.pdf")
        for j in (job, recent):
            await registry.transition_job(j.id, JobStatus.PROCESSING)
            await registry.transition_job(j.id, JobStatus.COMPLETED)

        old = datetime.now(timezone.utc) - timedelta(days=45)
        async with registry.session() as session:
            await session.execute(
                update(ConversionJob).where(ConversionJob.id == job.id).values(completed_at=old)
            )

        assert await registry.cleanup_completed_jobs(older_than_days=30) == 1
        assert await registry.get_job(job.id) is None
        assert await registry.get_job(recent.id) is not None


# =============================================================================
# Logs
# =============================================================================

class TestSyncLogs:

    async def test_logs_are_newest_first(self, registry, make_source):
        source = await make_source()
        for i in range(3):
            await registry.append_log(source.id, SyncAction.SYNC, LogStatus.SUCCESS, f"pass {i}")

        logs = await registry.list_logs(source.id)
        assert [entry.message for entry in logs] == ["pass 2", "pass 1", "pass 0"]
        assert logs[0].action == "sync"

    async def test_limit_and_details(self, registry, make_source):
        source = await make_source()
        await registry.append_log(
            source.id, SyncAction.FILE_PROCESS, LogStatus.ERROR, "failed", details={"file": "a.pdf"}
        )
        await registry.append_log(source.id, SyncAction.SYNC, LogStatus.SUCCESS, "ok")

        logs = await registry.list_logs(limit=1)
        assert len(logs) == 1
        older = (await registry.list_logs(source.id))[1]
        assert older.details == {"file": "a.pdf"}


# =============================================================================
# Converted-file index
# =============================================================================

class TestConvertedFiles:

    async def test_upsert_inserts_then_updates(self, registry, make_source):
        source = await make_source()
        first = await registry.upsert_converted_file(
            "/Documents/a.pdf",
            Platform.ONEDRIVE,
            remote_id="r1",
            source_id=source.id,
            converted_path="/store/a.md",
            file_name="a.pdf",
            format="pdf",
            checksum="v1",
        )
        second = await registry.upsert_converted_file(
            "/Documents/a.pdf",
            Platform.ONEDRIVE,
            converted_path="/store/a.md",
            file_name="a.pdf",
            format="pdf",
            checksum="v2",
        )

        assert second.id == first.id
        stored = await registry.get_converted_file("/Documents/a.pdf", Platform.ONEDRIVE)
        assert stored.checksum == "v2"
        assert stored.remote_id == "r1"

    async def test_key_includes_platform(self, registry):
        for platform in (Platform.ONEDRIVE, Platform.SHAREPOINT):
            await registry.upsert_converted_file(
                "/a.pdf", platform, converted_path="/a.md", file_name="a.pdf", format="pdf"
            )
        assert await registry.get_converted_file("/a.pdf", Platform.SHAREPOINT) is not None
        assert await registry.get_converted_file("/a.pdf", Platform.GOOGLE_DRIVE) is None
