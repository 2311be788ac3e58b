"""
docsync - Application and CLI Tests
===================================

Tests for:
- Job recovery at startup
- An end-to-end pass: fake remote file -> queue -> Markdown output
- CLI argument handling and exit codes
"""

import pytest

from docsync.db.models import JobStatus, LogStatus, Platform
from docsync.main import INTERRUPTED_MESSAGE, Application, _status, build_parser, main
from docsync.services.base import NotFoundError


@pytest.fixture
def app(test_settings, session_factory, async_engine, fake_connectors):
    test_settings.JOB_RETRY_BASE_DELAY_SECONDS = 0.01
    return Application(
        config=test_settings,
        session_factory=session_factory,
        engine=async_engine,
        connector_factory=fake_connectors,
    )


class TestApplication:

    async def test_recover_jobs(self, app, registry, make_source):
        source = await make_source()
        stale = await registry.create_job(source.id, "stale.pdf")
        await registry.transition_job(stale.id, JobStatus.PROCESSING)
        pending = await registry.create_job(source.id, "pending.pdf")

        assert await app.recover_jobs() == 1

        stored = await registry.get_job(stale.id)
        assert stored.status == JobStatus.FAILED
        assert stored.error_message == INTERRUPTED_MESSAGE
        assert app.queue.is_queued(pending.id)

    async def test_sync_converts_end_to_end(self, app, registry, make_source, fake_connectors, docx_bytes, test_settings):
        source = await make_source(destinations=["shared"])
        entry = fake_connectors.add_file("plan.docx", docx_bytes, checksum="rev-1")

        await app.startup(monitor=False)
        try:
            summary = await app.orchestrator.sync_source(source.id)
            await app.queue.join()

            jobs, _ = await registry.list_jobs(source_id=source.id)
            assert summary.processed == 1
            assert jobs[0].status == JobStatus.COMPLETED
            assert "# Quarterly Plan" in (test_settings.storage_dir / str(source.id) / "plan.docx.md").read_text()
            assert (test_settings.export_dir / "shared" / "plan.docx.md").exists()

            record = await registry.get_converted_file(entry.path, Platform.ONEDRIVE)
            assert record.checksum == "rev-1"
            logs = await registry.list_logs(source.id)
            assert any(log.message == "Converted plan.docx" and log.status == LogStatus.SUCCESS for log in logs)

            again = await app.orchestrator.sync_source(source.id)
            assert again.skipped == 1
        finally:
            await app.shutdown()

    async def test_corrupt_file_fails_without_retry(self, app, registry, make_source, fake_connectors):
        source = await make_source()
        fake_connectors.add_file("broken.docx", b"PK\x03\x04 not a zip")

        await app.startup(monitor=False)
        try:
            await app.orchestrator.sync_source(source.id)
            await app.queue.join()
        finally:
            await app.shutdown()

        jobs, _ = await registry.list_jobs(source_id=source.id)
        assert jobs[0].status == JobStatus.FAILED
        assert jobs[0].attempts == 1
        assert "broken.docx" in jobs[0].error_message

    async def test_status(self, app, make_source):
        await make_source()
        status = await _status(app)
        assert status["total_active_sources"] == 1
        assert status["jobs"]["total"] == 0


class TestCli:

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_sync_needs_source_id(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["sync"])

    def test_generate_key(self, capsys):
        assert main(["generate-key"]) == 0
        key = capsys.readouterr().out.strip()
        assert len(key) == 32

    def test_bad_configuration_exits_with_error(self, monkeypatch, capsys, test_settings):
        test_settings.ENCRYPTION_KEY = "short"
        monkeypatch.setattr("docsync.main.settings", test_settings)

        assert main(["--log-level", "WARNING", "status"]) == 1
        assert "Configuration error" in capsys.readouterr().err

    def test_service_error_exits_with_error(self, monkeypatch, capsys, test_settings):
        async def missing_source(app, source_id):
            raise NotFoundError("Source", source_id)

        monkeypatch.setattr("docsync.main.settings", test_settings)
        monkeypatch.setattr("docsync.main.Application", lambda: None)
        monkeypatch.setattr("docsync.main._sync_once", missing_source)

        assert main(["--log-level", "WARNING", "sync", "abc"]) == 1
        assert "Error: Source not found: abc" in capsys.readouterr().err
