"""Bounded worker pool that drains the job queue.

Generation jobs with unfinished dependencies are never blocked on: the worker
re-schedules them after the poll interval and moves on. Every job produces
exactly one stored result per request id; re-delivered jobs are skipped.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import httpx

from personacord.core.config.constants import (
    DEFAULT_DEPENDENCY_POLL_INTERVAL_SECONDS,
    DEFAULT_DEPENDENCY_WAIT_TIMEOUT_SECONDS,
    DEFAULT_WORKER_CONCURRENCY,
)
from personacord.core.error_handling import (
    COMMON_HANDLER_EXCEPTIONS,
    log_exception,
    log_job_failure,
)
from personacord.core.exceptions import DependencyTimeoutError, PipelineError
from personacord.jobs.schemas import (
    AudioTranscriptionJobData,
    AudioTranscriptionResult,
    ImageDescriptionJobData,
    ImageDescriptionResult,
    JobStatus,
)
from personacord.logic.dependencies import (
    DependencyTracker,
    JobState,
    evaluate_dependencies,
)
from personacord.logic.pipeline import (
    build_failure_result,
    fail_dependency_wait,
    run_generation_pipeline,
)
from personacord.services.diagnostics import StageName
from personacord.services.errors import parse_api_error
from personacord.services.llm import LITELLM_EXCEPTIONS

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from personacord.jobs.queue import AnyJob, JobEnvelope, JobQueue
    from personacord.jobs.schemas import JobResult, LLMGenerationJobData
    from personacord.logic.pipeline import PipelineServices

logger = logging.getLogger(__name__)

WORKER_EXCEPTIONS = (
    PipelineError,
    *COMMON_HANDLER_EXCEPTIONS,
    httpx.HTTPError,
    *LITELLM_EXCEPTIONS,
)
DELIVERY_EXCEPTIONS = (*COMMON_HANDLER_EXCEPTIONS, httpx.HTTPError)


class WorkerPool:
    """Runs queued jobs with at most ``concurrency`` in flight."""

    def __init__(  # noqa: PLR0913
        self,
        queue: JobQueue,
        *,
        pipeline_services: PipelineServices,
        transcribe: Callable[[AudioTranscriptionJobData], Awaitable[AudioTranscriptionResult]],
        describe: Callable[[ImageDescriptionJobData], Awaitable[ImageDescriptionResult]],
        deliver: Callable[[AnyJob, JobResult], Awaitable[None]] | None = None,
        concurrency: int = DEFAULT_WORKER_CONCURRENCY,
        poll_interval_seconds: float = DEFAULT_DEPENDENCY_POLL_INTERVAL_SECONDS,
        wait_timeout_seconds: float = DEFAULT_DEPENDENCY_WAIT_TIMEOUT_SECONDS,
        tracker: DependencyTracker | None = None,
    ) -> None:
        """Bind the queue to its processors."""
        self.queue = queue
        self.pipeline_services = pipeline_services
        self._transcribe = transcribe
        self._describe = describe
        self._deliver = deliver
        self.concurrency = max(1, concurrency)
        self.poll_interval_seconds = poll_interval_seconds
        self.wait_timeout_seconds = wait_timeout_seconds
        self.tracker = tracker or DependencyTracker()
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._in_flight: set[asyncio.Task[None]] = set()
        self._claimed: set[str] = set()
        self._runner: asyncio.Task[None] | None = None

    @property
    def in_flight(self) -> int:
        """Return how many jobs are running right now."""
        return len(self._in_flight)

    def start(self) -> asyncio.Task[None]:
        """Start draining the queue in the background."""
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self.run(), name="worker-pool")
        return self._runner

    async def run(self) -> None:
        """Drain the queue forever; cancel the task to stop."""
        logger.info("Worker pool started (concurrency=%s)", self.concurrency)
        while True:
            envelope = await self.queue.get()
            await self._semaphore.acquire()
            task = asyncio.create_task(self._run_one(envelope))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def stop(self) -> None:
        """Stop taking jobs and wait for the in-flight ones to finish."""
        if self._runner is not None:
            self._runner.cancel()
            await asyncio.gather(self._runner, return_exceptions=True)
            self._runner = None
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        await self.queue.close()
        logger.info("Worker pool stopped")

    async def _run_one(self, envelope: JobEnvelope) -> None:
        try:
            await self.process(envelope)
        finally:
            self._semaphore.release()
            self.queue.task_done()

    async def process(self, envelope: JobEnvelope) -> JobResult | None:
        """Process one envelope.

        Returns:
            The stored result, or None when the job was re-scheduled to wait
            for its dependencies or another worker holds the same request id.

        """
        job = envelope.job
        stored = self.queue.results.peek(job.request_id)
        if stored is not None:
            logger.info("Skipping %s: result already stored", job.request_id)
            return stored
        if job.request_id in self._claimed:
            logger.info("Skipping %s: already being processed", job.request_id)
            return None

        self._claimed.add(job.request_id)
        try:
            return await self._process_claimed(envelope)
        finally:
            self._claimed.discard(job.request_id)

    async def _process_claimed(self, envelope: JobEnvelope) -> JobResult | None:
        job = envelope.job
        if isinstance(job, AudioTranscriptionJobData):
            result = await self._run_contained(job, self._transcribe)
        elif isinstance(job, ImageDescriptionJobData):
            result = await self._run_contained(job, self._describe)
        else:
            result = await self._process_generation(envelope, job)
            if result is None:
                return None

        return await self._complete(job, result)

    async def _run_contained(
        self,
        job: AudioTranscriptionJobData | ImageDescriptionJobData,
        processor: Callable[..., Awaitable[JobResult]],
    ) -> JobResult:
        self.queue.set_status(job.request_id, JobStatus.ACTIVE)
        try:
            return await processor(job)
        except WORKER_EXCEPTIONS as exc:
            log_job_failure(
                logger=logger,
                job_type=job.job_type,
                request_id=job.request_id,
                error=exc,
            )
            return _preprocessing_failure(job, exc)

    async def _process_generation(
        self,
        envelope: JobEnvelope,
        job: LLMGenerationJobData,
    ) -> JobResult | None:
        entry = self.tracker.track(job.request_id, job.dependencies)
        machine = entry.machine
        readiness = evaluate_dependencies(job.dependencies, self.queue.status)

        if readiness is JobState.AWAITING_DEPENDENCIES:
            if machine.state is JobState.PENDING:
                machine.transition(JobState.AWAITING_DEPENDENCIES)
            waited = self.queue.age(envelope)
            if waited >= self.wait_timeout_seconds:
                machine.transition(JobState.FAILED)
                self.tracker.release(job.request_id)
                error = DependencyTimeoutError(job.request_id, waited)
                log_job_failure(
                    logger=logger,
                    job_type=job.job_type,
                    request_id=job.request_id,
                    error=error,
                    stage=StageName.DEPENDENCY_RESOLUTION,
                )
                return await fail_dependency_wait(job, error, self.pipeline_services)
            logger.debug(
                "Dependencies for %s not ready after %.1fs, re-scheduling (check %s)",
                job.request_id,
                waited,
                entry.checks,
            )
            self.queue.schedule_later(envelope, self.poll_interval_seconds)
            return None

        machine.transition(JobState.READY)
        machine.transition(JobState.RUNNING)
        self.tracker.release(job.request_id)
        self.queue.set_status(job.request_id, JobStatus.ACTIVE)
        try:
            result = await run_generation_pipeline(job, self.pipeline_services)
        except WORKER_EXCEPTIONS as exc:
            log_job_failure(
                logger=logger,
                job_type=job.job_type,
                request_id=job.request_id,
                error=exc,
            )
            machine.transition(JobState.FAILED)
            return build_failure_result(job, parse_api_error(exc), failed_step=None)
        machine.transition(JobState.COMPLETED if result.success else JobState.FAILED)
        return result

    async def _complete(self, job: AnyJob, result: JobResult) -> JobResult:
        stored = self.queue.results.store_once(job.request_id, result)
        if stored is not result:
            return stored
        self.queue.set_status(
            job.request_id,
            JobStatus.COMPLETED if result.success else JobStatus.FAILED,
        )
        if self._deliver is not None:
            try:
                await self._deliver(job, result)
            except DELIVERY_EXCEPTIONS as exc:
                log_exception(
                    logger=logger,
                    message="Result delivery failed",
                    error=exc,
                    context={"request_id": job.request_id, "job_type": job.job_type},
                )
        return result


def _preprocessing_failure(
    job: AudioTranscriptionJobData | ImageDescriptionJobData,
    error: BaseException,
) -> JobResult:
    completed_at = datetime.now(UTC)
    if isinstance(job, AudioTranscriptionJobData):
        return AudioTranscriptionResult(
            request_id=job.request_id,
            success=False,
            error=str(error),
            attachment_url=job.attachment.url,
            attachment_name=job.attachment.name,
            source_reference_number=job.source_reference_number,
            completed_at=completed_at,
        )
    return ImageDescriptionResult(
        request_id=job.request_id,
        success=False,
        failed_count=len(job.attachments),
        error=str(error),
        source_reference_number=job.source_reference_number,
        completed_at=completed_at,
    )
