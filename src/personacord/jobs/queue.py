"""In-process job queue with delayed re-scheduling and a TTL result store.

A job's id is its ``request_id``; preprocessing results are stored under that
id, which is what a generation job's dependencies point at.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Generic, TypeVar

from personacord.core.config.constants import DEFAULT_RESULT_TTL_SECONDS
from personacord.jobs.schemas import (
    AudioTranscriptionJobData,
    ImageDescriptionJobData,
    JobResult,
    TERMINAL_JOB_STATUSES,
    JobStatus,
    LLMGenerationJobData,
    parse_job_data,
)

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

AnyJob = AudioTranscriptionJobData | ImageDescriptionJobData | LLMGenerationJobData

K = TypeVar("K")
V = TypeVar("V")


class TtlMap(Generic[K, V]):
    """Mapping whose entries expire ``ttl_seconds`` after they were written."""

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize an empty map."""
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[K, tuple[V, float]] = {}

    def evict_expired(self) -> int:
        """Drop expired entries and return how many were dropped."""
        now = self._clock()
        expired = [
            key for key, (_, expires_at) in self._entries.items() if expires_at <= now
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def get(self, key: K) -> V | None:
        self.evict_expired()
        entry = self._entries.get(key)
        return entry[0] if entry is not None else None

    def set(self, key: K, value: V) -> None:
        self.evict_expired()
        self._entries[key] = (value, self._clock() + self.ttl_seconds)

    def setdefault(self, key: K, value: V) -> V:
        """Store `value` unless `key` is live; return the live value."""
        existing = self.get(key)
        if existing is not None:
            return existing
        self._entries[key] = (value, self._clock() + self.ttl_seconds)
        return value

    def pop(self, key: K) -> V | None:
        entry = self._entries.pop(key, None)
        return entry[0] if entry is not None else None

    def __contains__(self, key: object) -> bool:
        self.evict_expired()
        return key in self._entries

    def __len__(self) -> int:
        self.evict_expired()
        return len(self._entries)


class InMemoryResultStore:
    """Results keyed by request id; each id is written at most once."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_RESULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize an empty store."""
        self._results: TtlMap[str, JobResult] = TtlMap(ttl_seconds, clock)

    async def get_result(self, key: str) -> JobResult | None:
        """Return the result stored under `key`, if any."""
        return self._results.get(key)

    def peek(self, key: str) -> JobResult | None:
        """Return the stored result without awaiting."""
        return self._results.get(key)

    def store_once(self, key: str, result: JobResult) -> JobResult:
        """Store `result` unless `key` already has one; return the stored one."""
        stored = self._results.setdefault(key, result)
        if stored is not result:
            logger.info("Result for %s already stored, keeping the first one", key)
        return stored

    def __contains__(self, key: object) -> bool:
        return key in self._results

    def __len__(self) -> int:
        return len(self._results)


@dataclass(frozen=True, slots=True)
class JobEnvelope:
    """A validated job plus its scheduling bookkeeping."""

    job: AnyJob
    enqueued_at: float
    reschedules: int = 0

    @property
    def request_id(self) -> str:
        return self.job.request_id

    def rescheduled(self) -> JobEnvelope:
        """Return a copy counting one more re-schedule."""
        return JobEnvelope(
            job=self.job,
            enqueued_at=self.enqueued_at,
            reschedules=self.reschedules + 1,
        )


class JobQueue:
    """Async job queue shared by producers and the worker pool."""

    def __init__(
        self,
        results: InMemoryResultStore | None = None,
        *,
        status_ttl_seconds: float = DEFAULT_RESULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the queue and its status and result stores."""
        self.results = results or InMemoryResultStore(clock=clock)
        self._queue: asyncio.Queue[JobEnvelope] = asyncio.Queue()
        self._statuses: TtlMap[str, JobStatus] = TtlMap(status_ttl_seconds, clock)
        self._scheduled: set[asyncio.Task[None]] = set()
        self.clock = clock

    async def enqueue(self, job: AnyJob | Mapping[str, object]) -> JobResult | None:
        """Validate and enqueue `job`.

        Returns:
            The stored result when this request id already completed, otherwise
            None. Nothing is enqueued for a request id that already completed
            or is still queued, waiting or running.

        Raises:
            JobValidationError: If a raw mapping fails schema validation.

        """
        validated = parse_job_data(job) if isinstance(job, Mapping) else job
        stored = self.results.peek(validated.request_id)
        if stored is not None:
            logger.info(
                "Request %s already completed, returning stored result",
                validated.request_id,
            )
            return stored

        live = self._statuses.get(validated.request_id)
        if live is not None and live not in TERMINAL_JOB_STATUSES:
            logger.info(
                "Request %s is already %s, not enqueueing it again",
                validated.request_id,
                live,
            )
            return None

        self._statuses.set(validated.request_id, JobStatus.QUEUED)
        await self._queue.put(JobEnvelope(job=validated, enqueued_at=self.clock()))
        logger.debug("Enqueued %s job %s", validated.job_type, validated.request_id)
        return None

    def schedule_later(
        self,
        envelope: JobEnvelope,
        delay_seconds: float,
    ) -> asyncio.Task[None]:
        """Put `envelope` back on the queue after `delay_seconds`."""
        self._statuses.set(envelope.request_id, JobStatus.PENDING)

        async def _requeue() -> None:
            await asyncio.sleep(delay_seconds)
            await self._queue.put(envelope.rescheduled())

        task = asyncio.create_task(_requeue())
        self._scheduled.add(task)
        task.add_done_callback(self._scheduled.discard)
        return task

    async def get(self) -> JobEnvelope:
        """Wait for the next envelope."""
        return await self._queue.get()

    def age(self, envelope: JobEnvelope) -> float:
        """Return the seconds since `envelope` was first enqueued."""
        return self.clock() - envelope.enqueued_at

    def task_done(self) -> None:
        self._queue.task_done()

    def status(self, job_id: str) -> JobStatus | None:
        """Return the live status of `job_id`, if known."""
        stored = self.results.peek(job_id)
        if stored is not None:
            return JobStatus.COMPLETED if stored.success else JobStatus.FAILED
        return self._statuses.get(job_id)

    def set_status(self, job_id: str, status: JobStatus) -> None:
        self._statuses.set(job_id, status)

    def qsize(self) -> int:
        return self._queue.qsize()

    @property
    def scheduled_count(self) -> int:
        """Return how many delayed re-schedules are pending."""
        return len(self._scheduled)

    async def close(self) -> None:
        """Cancel pending delayed re-schedules."""
        tasks = list(self._scheduled)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._scheduled.clear()
