"""Asynchronous execution of optimization jobs."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from datetime import datetime, timezone
from typing import AsyncIterator, Callable

from strategy_allocator.errors import AllocationCancelledError, AllocationError, AllocationInputError
from strategy_allocator.optimizer.hierarchical import run_hierarchical_optimization
from strategy_allocator.settings import EngineSettings

from .models import (
    CompletionEvent,
    ErrorEvent,
    Job,
    JobStatus,
    OptimizationEvent,
    OptimizationRequest,
    PhaseProgressEvent,
    is_terminal_event,
)
from .progress import ProgressBroker

logger = logging.getLogger(__name__)

EventSink = Callable[[PhaseProgressEvent], None]


def error_event_for(exc: BaseException) -> ErrorEvent:
    if isinstance(exc, AllocationCancelledError):
        return ErrorEvent(error="Optimization cancelled", details=str(exc), code=exc.code)
    if isinstance(exc, AllocationInputError):
        return ErrorEvent(error=exc.user_message, details=str(exc), code=exc.code)
    if isinstance(exc, AllocationError):
        return ErrorEvent(error="Hierarchical optimization failed", details=exc.user_message, code=exc.code)
    return ErrorEvent(error="Hierarchical optimization failed", details=str(exc), code="INTERNAL_ERROR")


def execute_optimization(
    request: OptimizationRequest,
    on_progress: EventSink | None = None,
    cancel: Callable[[], bool] | None = None,
    progress_interval: int = 50,
) -> CompletionEvent | ErrorEvent:
    """Run one request synchronously and return its terminal event."""
    started = time.perf_counter()

    def forward(progress) -> None:
        if on_progress is not None:
            on_progress(PhaseProgressEvent.from_progress(progress))

    try:
        result = run_hierarchical_optimization(
            request.blocks,
            request.config,
            progress_callback=forward,
            cancel=cancel,
            progress_interval=progress_interval,
        )
    except AllocationError as exc:
        logger.warning("Hierarchical optimization stopped: %s", exc)
        return error_event_for(exc)
    except Exception as exc:
        logger.exception("Hierarchical optimization crashed")
        return error_event_for(exc)

    return CompletionEvent(result=result, duration_ms=(time.perf_counter() - started) * 1000.0)


class JobExecutor:
    """Run optimization jobs on worker threads with bounded concurrency."""

    def __init__(
        self,
        max_concurrent: int | None = None,
        *,
        settings: EngineSettings | None = None,
        broker: ProgressBroker | None = None,
    ) -> None:
        self.settings = settings or EngineSettings.from_env()
        self.max_concurrent = max(1, int(max_concurrent or self.settings.max_concurrent_jobs))
        self.broker = broker or ProgressBroker()
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        self._jobs: dict[str, Job] = {}
        self._tasks: dict[str, asyncio.Task[Job]] = {}
        self._cancel_flags: dict[str, threading.Event] = {}

    async def submit(self, request: OptimizationRequest) -> Job:
        job = Job(request=request)
        self._jobs[job.id] = job
        self._cancel_flags[job.id] = threading.Event()
        self._tasks[job.id] = asyncio.create_task(self._run(job))
        logger.info("Submitted optimization job with %d blocks", len(request.blocks), extra={"job_id": job.id})
        return job

    async def _run(self, job: Job) -> Job:
        loop = asyncio.get_running_loop()
        flag = self._cancel_flags[job.id]

        def on_progress(event: PhaseProgressEvent) -> None:
            loop.call_soon_threadsafe(self._publish_progress, job, event)

        async with self._semaphore:
            if flag.is_set():
                terminal: CompletionEvent | ErrorEvent = error_event_for(
                    AllocationCancelledError("Job cancelled before start")
                )
            else:
                job.status = JobStatus.RUNNING
                job.started_at = datetime.now(timezone.utc)
                terminal = await asyncio.to_thread(
                    execute_optimization,
                    job.request,
                    on_progress,
                    flag.is_set,
                    self.settings.progress_interval,
                )

        self._finish(job, terminal)
        return job

    def _publish_progress(self, job: Job, event: PhaseProgressEvent) -> None:
        job.progress = event
        self.broker.publish(job.id, event)

    def _finish(self, job: Job, terminal: CompletionEvent | ErrorEvent) -> None:
        job.completed_at = datetime.now(timezone.utc)
        if isinstance(terminal, CompletionEvent):
            job.status = JobStatus.COMPLETED
            job.result = terminal.result
        elif terminal.code == AllocationCancelledError.code:
            job.status = JobStatus.CANCELLED
            job.error = terminal.error
        else:
            job.status = JobStatus.FAILED
            job.error = terminal.error

        self.broker.publish(job.id, terminal)
        self.broker.close(job.id)
        self._cancel_flags.pop(job.id, None)
        logger.info("Job finished with status %s", job.status.value, extra={"job_id": job.id})

    def cancel(self, job_id: str) -> bool:
        flag = self._cancel_flags.get(job_id)
        if flag is None:
            return False
        flag.set()
        return True

    def get_job(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    async def wait(self, job_id: str) -> Job:
        task = self._tasks.get(job_id)
        if task is None:
            raise KeyError(job_id)
        return await task

    def subscribe(self, job_id: str) -> AsyncIterator[OptimizationEvent]:
        return self.broker.subscribe(job_id)

    def get_running_jobs(self) -> list[str]:
        return [job_id for job_id, job in self._jobs.items() if job.status is JobStatus.RUNNING]

    def forget(self, job_id: str) -> bool:
        """Drop a finished job, its task and its event history."""
        job = self._jobs.get(job_id)
        if job is None or not job.is_terminal:
            return False
        self._jobs.pop(job_id, None)
        self._tasks.pop(job_id, None)
        self._cancel_flags.pop(job_id, None)
        self.broker.forget(job_id)
        logger.debug("Forgot job", extra={"job_id": job_id})
        return True

    def release_when_done(self, job_id: str) -> None:
        """Forget the job as soon as its task finishes."""
        task = self._tasks.get(job_id)
        if task is None:
            return
        task.add_done_callback(lambda _task: self.forget(job_id))

    def cleanup_finished_jobs(self, max_age_seconds: float = 0.0) -> int:
        """Forget terminal jobs that completed at least `max_age_seconds` ago."""
        now = datetime.now(timezone.utc)
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.is_terminal
            and job.completed_at is not None
            and (now - job.completed_at).total_seconds() >= max_age_seconds
        ]
        for job_id in expired:
            self.forget(job_id)
        if expired:
            logger.info("Cleaned up %d finished jobs", len(expired))
        return len(expired)


async def stream_optimization(
    request: OptimizationRequest,
    *,
    executor: JobExecutor | None = None,
    release: bool = True,
) -> AsyncIterator[OptimizationEvent]:
    """Submit a request and yield its events until the terminal one.

    Closing the iterator early cancels the job. With `release`, the executor
    forgets the job once it finishes, since this iterator is its only reader.
    """
    executor = executor or JobExecutor()
    job = await executor.submit(request)
    if release:
        executor.release_when_done(job.id)
    finished = False
    try:
        async for event in executor.subscribe(job.id):
            if is_terminal_event(event):
                finished = True
            yield event
    finally:
        if not finished:
            executor.cancel(job.id)
