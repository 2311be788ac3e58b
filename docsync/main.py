"""
docsync - Service Runner
========================

Wires the Registry, credential cipher, conversion stage, job queue and
sync orchestrator together, and exposes them through a small CLI.

Usage:
    docsync run                  # monitor all active sources until interrupted
    docsync sync <source_id>     # one manual sync pass, waits for its jobs
    docsync init-db
    docsync generate-key
    docsync status
"""

import argparse
import asyncio
import json
import signal
import sys
from typing import List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from docsync.core.config import Settings, settings, validate_startup
from docsync.core.logging import configure_logging
from docsync.db.database import close_db, init_db
from docsync.db.models import JobStatus
from docsync.db.repository import Registry
from docsync.services.base import ConfigurationException, JobStateError, ServiceException
from docsync.services.connectors.registry import create_connector
from docsync.services.conversion import ConversionService
from docsync.services.encryption import CredentialCipher, generate_encryption_key
from docsync.services.monitoring import SyncOrchestrator
from docsync.services.queue import ConversionQueue
from docsync.services.sources import ConnectorFactory, SourceService

logger = structlog.get_logger(__name__)

INTERRUPTED_MESSAGE = "Interrupted by service restart"


class Application:
    """Owns the pipeline components and their startup/shutdown order."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        engine: Optional[AsyncEngine] = None,
        connector_factory: ConnectorFactory = create_connector,
    ):
        self.config = config or settings
        self.engine = engine
        self.registry = Registry(session_factory)
        self.cipher = CredentialCipher(self.config.ENCRYPTION_KEY)
        self.conversion = ConversionService(self.registry, self.config)
        self.queue = ConversionQueue(
            self.registry,
            self.conversion,
            concurrency=self.config.WORKER_CONCURRENCY,
            max_retries=self.config.JOB_MAX_RETRIES,
            retry_base_delay=self.config.JOB_RETRY_BASE_DELAY_SECONDS,
        )
        self.orchestrator = SyncOrchestrator(
            self.registry,
            self.queue,
            cipher=self.cipher,
            connector_factory=connector_factory,
            config=self.config,
        )
        self.conversion.set_fetcher(self.orchestrator.fetch_for_job)
        self.sources = SourceService(
            self.registry,
            cipher=self.cipher,
            connector_factory=connector_factory,
            config=self.config,
        )

    async def startup(self, monitor: bool = True) -> None:
        """Database, then queue (with leftover jobs), then monitoring."""
        logger.info("Starting docsync", environment=self.config.ENVIRONMENT)
        await init_db(self.engine)
        await self.queue.start()
        await self.recover_jobs()
        if monitor:
            await self.orchestrator.start()
        logger.info("docsync started")

    async def shutdown(self) -> None:
        logger.info("Shutting down docsync...")
        try:
            await self.orchestrator.stop()
            await self.queue.stop()
        finally:
            if self.engine is None:
                await close_db()
        logger.info("docsync shutdown complete")

    async def recover_jobs(self) -> int:
        """
        Re-enqueue pending jobs and fail processing jobs left over from a
        previous run. Returns the number re-enqueued.
        """
        stale, _ = await self.registry.list_jobs(limit=10000, status=JobStatus.PROCESSING)
        for job in stale:
            try:
                await self.registry.transition_job(job.id, JobStatus.FAILED, error_message=INTERRUPTED_MESSAGE)
            except JobStateError:
                continue

        pending, _ = await self.registry.list_jobs(limit=10000, status=JobStatus.PENDING)
        requeued = 0
        for job in reversed(pending):
            if await self.queue.enqueue(job.id):
                requeued += 1
        if stale or requeued:
            logger.info("Recovered jobs", failed_stale=len(stale), requeued=requeued)
        return requeued


# =============================================================================
# CLI
# =============================================================================

async def _run(app: Application) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows: fall back to KeyboardInterrupt
            pass

    await app.startup()
    try:
        await stop_event.wait()
    finally:
        await app.shutdown()


async def _sync_once(app: Application, source_id: str) -> dict:
    await app.startup(monitor=False)
    try:
        summary = await app.orchestrator.sync_source(source_id)
        await app.queue.join()
        return {
            "source_id": summary.source_id,
            "listed": summary.listed,
            "processed": summary.processed,
            "skipped": summary.skipped,
            "failed": summary.failed,
            "queue": app.queue.get_stats(),
        }
    finally:
        await app.shutdown()


async def _status(app: Application) -> dict:
    await init_db(app.engine)
    try:
        status = await app.orchestrator.get_status()
        status["jobs"] = await app.conversion.get_job_stats()
        return status
    finally:
        if app.engine is None:
            await close_db()


async def _init_db() -> None:
    await init_db()
    await close_db()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docsync",
        description="Sync cloud-storage documents and convert them to Markdown",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Monitor all active sources until interrupted")
    sync_parser = subparsers.add_parser("sync", help="Run one sync pass for a source")
    sync_parser.add_argument("source_id", help="Source UUID")
    subparsers.add_parser("init-db", help="Create database tables")
    subparsers.add_parser("generate-key", help="Print a new ENCRYPTION_KEY")
    subparsers.add_parser("status", help="Print monitoring and job statistics")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "generate-key":
        print(generate_encryption_key())
        return 0

    configure_logging(level=args.log_level)

    try:
        validate_startup(settings)
    except ConfigurationException as e:
        logger.error("Invalid configuration", error=e.message, **e.details)
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return 1

    try:
        if args.command == "init-db":
            asyncio.run(_init_db())
            print("Database initialized")
        elif args.command == "run":
            asyncio.run(_run(Application()))
        elif args.command == "sync":
            print(json.dumps(asyncio.run(_sync_once(Application(), args.source_id)), indent=2))
        elif args.command == "status":
            print(json.dumps(asyncio.run(_status(Application())), indent=2, default=str))
    except KeyboardInterrupt:
        return 130
    except ServiceException as e:
        logger.error("Command failed", command=args.command, **e.to_dict())
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
