"""
docsync - Conversion Job Queue
==============================

In-process work queue for conversion jobs.

- N asyncio workers pull job ids from an asyncio.Queue
- a job id is accepted once while queued or running (key ``conversion-<id>``)
- a job is claimed with a pending -> processing transition; a worker that
  loses that race simply drops the job
- ConversionError fails a job immediately; anything else is retried with
  exponential backoff (base * 2**n) before the job is failed
- only the final outcome is written to the Registry

Listeners can observe ``started``, ``progress``, ``retrying``, ``completed``
and ``failed``. A listener that raises is logged and otherwise ignored.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

from docsync.db.models import ConversionJob, JobStatus
from docsync.db.repository import Registry
from docsync.services.base import BaseService, ConversionError, JobStateError, ValidationError
from docsync.utils.async_helpers import cancel_and_wait, create_safe_task, maybe_await

QUEUE_EVENTS = ("started", "progress", "retrying", "completed", "failed")

ProgressCallback = Callable[[int], Awaitable[None]]
Listener = Callable[[str, Dict[str, Any]], Any]


@dataclass
class JobOutcome:
    """What a handler reports for a successful job."""
    output_path: Optional[str] = None
    checksum: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


class JobHandler(Protocol):
    async def run(self, job: ConversionJob, progress: ProgressCallback) -> JobOutcome:
        ...

    async def on_completed(self, job: ConversionJob, outcome: JobOutcome) -> None:
        ...

    async def on_failed(self, job: ConversionJob, error: str) -> None:
        ...


def job_key(job_id: Any) -> str:
    return f"conversion-{job_id}"


class ConversionQueue(BaseService):
    """
    Bounded-concurrency executor for conversion jobs.

    Usage:
        queue = ConversionQueue(registry, handler, concurrency=3)
        await queue.start()
        await queue.enqueue(job.id)
        ...
        await queue.stop()
    """

    def __init__(
        self,
        registry: Registry,
        handler: JobHandler,
        concurrency: int = 3,
        max_retries: int = 3,
        retry_base_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        super().__init__()
        if concurrency < 1:
            raise ValidationError("concurrency must be at least 1", field="concurrency")
        if max_retries < 0:
            raise ValidationError("max_retries cannot be negative", field="max_retries")

        self.registry = registry
        self.handler = handler
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._sleep = sleep

        self._queue: "asyncio.Queue[str]" = asyncio.Queue()
        self._keys: Set[str] = set()
        self._active: Set[str] = set()
        self._workers: List[asyncio.Task] = []
        self._listeners: Dict[str, List[Listener]] = {event: [] for event in QUEUE_EVENTS}
        self._resume = asyncio.Event()
        self._resume.set()
        self._accepting = True
        self._counters = {"completed": 0, "failed": 0, "retried": 0}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    async def start(self) -> None:
        if self.running:
            return
        self._accepting = True
        self._workers = [
            create_safe_task(self._worker(index), name=f"conversion_worker_{index}")
            for index in range(self.concurrency)
        ]
        self.log_info("Conversion queue started", concurrency=self.concurrency)

    async def stop(self, drain: bool = False, timeout: float = 30.0) -> None:
        """
        Stop the workers.

        Args:
            drain: wait (up to timeout) for queued and running jobs first
            timeout: seconds to wait when draining
        """
        self._accepting = False
        self._resume.set()
        if drain:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                self.log_warning("Queue drain timed out", waiting=self._queue.qsize(), active=len(self._active))
        for task in self._workers:
            await cancel_and_wait(task)
        self._workers = []
        self.log_info("Conversion queue stopped")

    def pause(self) -> None:
        """Stop picking up new jobs. Running jobs finish."""
        self._resume.clear()
        self.log_info("Conversion queue paused")

    def resume(self) -> None:
        self._resume.set()
        self.log_info("Conversion queue resumed")

    @property
    def paused(self) -> bool:
        return not self._resume.is_set()

    async def join(self) -> None:
        """Wait until every accepted job has been handled."""
        await self._queue.join()

    # =========================================================================
    # Submission and events
    # =========================================================================

    async def enqueue(self, job_id: Any) -> bool:
        """
        Submit a job id. Returns False when the same job is already queued
        or running, or when the queue is shutting down.
        """
        key = job_key(job_id)
        if not self._accepting:
            self.log_warning("Queue not accepting jobs", job_id=str(job_id))
            return False
        if key in self._keys:
            self.log_debug("Duplicate job submission ignored", job_id=str(job_id))
            return False
        self._keys.add(key)
        await self._queue.put(str(job_id))
        return True

    def is_queued(self, job_id: Any) -> bool:
        return job_key(job_id) in self._keys

    def on(self, event: str, callback: Listener) -> None:
        """Register callback(job_id, data) for a queue event."""
        if event not in self._listeners:
            raise ValidationError(f"Unknown queue event: {event}", field="event")
        self._listeners[event].append(callback)

    async def _emit(self, event: str, job_id: str, **data: Any) -> None:
        for callback in self._listeners[event]:
            try:
                await maybe_await(callback(job_id, data))
            except Exception as e:
                self.log_error("Queue listener failed", error=e, event=event, job_id=job_id)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "waiting": self._queue.qsize(),
            "active": len(self._active),
            "completed": self._counters["completed"],
            "failed": self._counters["failed"],
            "retried": self._counters["retried"],
            "paused": self.paused,
            "workers": len([t for t in self._workers if not t.done()]),
        }

    # =========================================================================
    # Workers
    # =========================================================================

    async def _worker(self, index: int) -> None:
        while True:
            job_id = await self._queue.get()
            try:
                await self._resume.wait()
                self._active.add(job_id)
                await self._process(job_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Registry unavailable or similar; the job keeps its stored state
                self.log_error("Worker error", error=e, worker=index, job_id=job_id)
            finally:
                self._active.discard(job_id)
                self._keys.discard(job_key(job_id))
                self._queue.task_done()

    async def _process(self, job_id: str) -> None:
        job = await self.registry.get_job(job_id)
        if job is None:
            self.log_warning("Queued job no longer exists", job_id=job_id)
            return
        if job.status != JobStatus.PENDING:
            self.log_debug("Skipping job that is not pending", job_id=job_id, status=job.status.value)
            return

        try:
            job = await self.registry.transition_job(job_id, JobStatus.PROCESSING, attempts=1)
        except JobStateError:
            self.log_debug("Job claimed elsewhere", job_id=job_id)
            return

        await self._emit("started", job_id, file_name=job.file_name)

        async def progress(value: int) -> None:
            await self.registry.update_job_progress(job_id, value)
            await self._emit("progress", job_id, progress=value)

        attempt = 0
        while True:
            try:
                outcome = await self.handler.run(job, progress)
                break
            except asyncio.CancelledError:
                raise
            except ConversionError as e:
                await self._finish_failed(job, e.message)
                return
            except Exception as e:
                message = getattr(e, "message", None) or str(e) or type(e).__name__
                if attempt >= self.max_retries:
                    await self._finish_failed(job, message)
                    return
                if not await self._still_processing(job_id):
                    return
                delay = self.retry_base_delay * (2 ** attempt)
                attempt += 1
                self._counters["retried"] += 1
                self.log_warning(
                    "Job attempt failed, retrying",
                    job_id=job_id,
                    attempt=attempt,
                    delay=delay,
                    error=message,
                )
                await self._emit("retrying", job_id, attempt=attempt, delay=delay, error=message)
                await self.registry.update_job(job_id, attempts=attempt + 1)
                await self._sleep(delay)
                if not await self._still_processing(job_id):
                    return

        await self._finish_completed(job, outcome or JobOutcome())

    async def _still_processing(self, job_id: str) -> bool:
        """False once the job was cancelled or finalised by someone else."""
        current = await self.registry.get_job(job_id)
        if current is not None and current.status == JobStatus.PROCESSING:
            return True
        self.log_info("Job left processing, abandoning retries", job_id=job_id)
        return False

    async def _finish_completed(self, job: ConversionJob, outcome: JobOutcome) -> None:
        job_id = str(job.id)
        try:
            job = await self.registry.transition_job(job.id, JobStatus.COMPLETED, output_path=outcome.output_path)
        except JobStateError as e:
            # Cancelled while running; the cancellation stands
            self.log_info("Job result discarded", job_id=job_id, reason=e.message)
            return

        self._counters["completed"] += 1
        try:
            await self.handler.on_completed(job, outcome)
        except Exception as e:
            self.log_error("Completion handler failed", error=e, job_id=job_id)
        self.log_info("Job completed", job_id=job_id, file_name=job.file_name)
        await self._emit("completed", job_id, output_path=outcome.output_path, warnings=outcome.warnings)

    async def _finish_failed(self, job: ConversionJob, message: str) -> None:
        job_id = str(job.id)
        try:
            job = await self.registry.transition_job(job.id, JobStatus.FAILED, error_message=message)
        except JobStateError as e:
            self.log_info("Job already finalised", job_id=job_id, reason=e.message)
            return

        self._counters["failed"] += 1
        try:
            await self.handler.on_failed(job, message)
        except Exception as e:
            self.log_error("Failure handler failed", error=e, job_id=job_id)
        self.log_warning("Job failed", job_id=job_id, file_name=job.file_name, error=message)
        await self._emit("failed", job_id, error=message)
