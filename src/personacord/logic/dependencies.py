"""Preprocessing dependency tracking for generation jobs."""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

import httpx

from personacord.core.config import DEPENDENCY_MAP_TTL_SECONDS
from personacord.core.error_handling import COMMON_HANDLER_EXCEPTIONS, log_exception
from personacord.core.exceptions import InvalidStateTransitionError
from personacord.core.models import PreprocessingResults, ProcessedAttachment
from personacord.jobs.schemas import (
    TERMINAL_JOB_STATUSES,
    AudioTranscriptionResult,
    ImageDescriptionResult,
    JobDependency,
    JobResult,
    JobStatus,
    JobType,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

logger = logging.getLogger(__name__)

DEPENDENCY_LOOKUP_EXCEPTIONS = (*COMMON_HANDLER_EXCEPTIONS, httpx.HTTPError)
_OLDEST = datetime.min.replace(tzinfo=UTC)


class JobState(StrEnum):
    """Scheduling state of one generation job."""

    PENDING = "pending"
    AWAITING_DEPENDENCIES = "awaiting-dependencies"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


_ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset(
        {JobState.AWAITING_DEPENDENCIES, JobState.READY, JobState.FAILED},
    ),
    JobState.AWAITING_DEPENDENCIES: frozenset({JobState.READY, JobState.FAILED}),
    JobState.READY: frozenset({JobState.RUNNING, JobState.FAILED}),
    JobState.RUNNING: frozenset({JobState.COMPLETED, JobState.FAILED}),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
}


@dataclass(slots=True)
class JobStateMachine:
    """Explicit state machine driven by the scheduler, never by a blocking wait."""

    request_id: str
    state: JobState = JobState.PENDING
    transitions: list[tuple[JobState, JobState]] = field(default_factory=list)

    def can_transition(self, target: JobState) -> bool:
        """Return True if `target` is reachable from the current state."""
        return target in _ALLOWED_TRANSITIONS[self.state]

    def transition(self, target: JobState) -> None:
        """Move to `target`, raising on an illegal transition."""
        if not self.can_transition(target):
            raise InvalidStateTransitionError(self.state.value, target.value)
        self.transitions.append((self.state, target))
        self.state = target

    @property
    def is_terminal(self) -> bool:
        """Return True once the job has completed or failed."""
        return self.state in {JobState.COMPLETED, JobState.FAILED}


def evaluate_dependencies(
    dependencies: Sequence[JobDependency],
    lookup: Callable[[str], JobStatus | None],
) -> JobState:
    """Decide whether a job may run.

    Args:
        dependencies: Dependencies declared on the generation job.
        lookup: Returns the live status of a dependency job id, or None when
            unknown (the declared status is used instead).

    Returns:
        ``READY`` when every dependency is terminal, else
        ``AWAITING_DEPENDENCIES``. A failed dependency counts as terminal.

    """
    for dependency in dependencies:
        status = lookup(dependency.job_id) or dependency.status
        if status not in TERMINAL_JOB_STATUSES:
            return JobState.AWAITING_DEPENDENCIES
    return JobState.READY


class ResultStore(Protocol):
    """Read access to stored job results."""

    async def get_result(self, key: str) -> JobResult | None:
        """Return the result stored under `key`, if any."""
        ...


@dataclass(slots=True)
class _Candidate:
    attachment: ProcessedAttachment
    completed_at: datetime
    order: int
    transcription: bool = False


def _audio_candidates(result: AudioTranscriptionResult) -> list[ProcessedAttachment]:
    if not result.content:
        return []
    return [
        ProcessedAttachment(
            kind="audio",
            description=result.content,
            url=result.attachment_url,
            name=result.attachment_name,
            source_reference_number=result.source_reference_number,
        ),
    ]


def _image_candidates(result: ImageDescriptionResult) -> list[ProcessedAttachment]:
    return [
        ProcessedAttachment(
            kind="image",
            description=item.description,
            url=item.url,
            source_reference_number=result.source_reference_number,
        )
        for item in result.descriptions
        if item.description
    ]


def _matches_type(dependency: JobDependency, result: JobResult) -> bool:
    if dependency.type is JobType.AUDIO_TRANSCRIPTION:
        return isinstance(result, AudioTranscriptionResult)
    if dependency.type is JobType.IMAGE_DESCRIPTION:
        return isinstance(result, ImageDescriptionResult)
    return False


async def _load_result(
    dependency: JobDependency,
    result_store: ResultStore,
) -> JobResult | None:
    try:
        return await result_store.get_result(dependency.storage_key)
    except DEPENDENCY_LOOKUP_EXCEPTIONS as exc:
        log_exception(
            logger=logger,
            message="Failed to load dependency result",
            error=exc,
            context={"job_id": dependency.job_id, "key": dependency.storage_key},
        )
        return None


async def resolve_dependencies(
    dependencies: Sequence[JobDependency],
    result_store: ResultStore,
) -> PreprocessingResults:
    """Merge completed dependency results into preprocessing output.

    A missing, failed or unreadable result marks that dependency unavailable
    and the job proceeds without it. Results carrying a
    ``source_reference_number`` are attributed to that referenced message.
    When two results describe the same attachment of the same reference, the
    one completed most recently wins.
    """
    winners: dict[tuple[int | None, str], _Candidate] = {}
    resolved = PreprocessingResults()
    order = 0

    for dependency in dependencies:
        result = await _load_result(dependency, result_store)
        if result is None:
            logger.warning(
                "Dependency %s (%s) has no result, treating as unavailable",
                dependency.job_id,
                dependency.type,
            )
            resolved.unavailable.append(dependency.job_id)
            continue
        if not _matches_type(dependency, result):
            logger.warning(
                "Dependency %s returned %s, expected %s",
                dependency.job_id,
                type(result).__name__,
                dependency.type,
            )
            resolved.unavailable.append(dependency.job_id)
            continue
        if not result.success:
            logger.info(
                "Dependency %s failed (%s), continuing without it",
                dependency.job_id,
                result.error,
            )
            resolved.unavailable.append(dependency.job_id)
            continue

        is_audio = isinstance(result, AudioTranscriptionResult)
        attachments = (
            _audio_candidates(result)
            if isinstance(result, AudioTranscriptionResult)
            else _image_candidates(result)
        )
        if not attachments:
            resolved.unavailable.append(dependency.job_id)
            continue

        completed_at = result.completed_at or _OLDEST
        for attachment in attachments:
            # The dependency's own reference number covers results that omit it
            reference = (
                attachment.source_reference_number
                or dependency.source_reference_number
            )
            key = (reference, attachment.url or dependency.job_id)
            candidate = _Candidate(
                attachment=dataclasses.replace(
                    attachment,
                    source_reference_number=reference,
                ),
                completed_at=completed_at,
                order=order,
                transcription=is_audio,
            )
            order += 1
            existing = winners.get(key)
            if existing is None:
                winners[key] = candidate
            elif completed_at >= existing.completed_at:
                # Keep the slot of the first occurrence so output order is stable
                candidate.order = existing.order
                winners[key] = candidate

    for candidate in sorted(winners.values(), key=lambda item: item.order):
        attachment = candidate.attachment
        reference = attachment.source_reference_number
        if reference is None:
            resolved.processed_attachments.append(attachment)
            if candidate.transcription:
                resolved.transcriptions.append(attachment.description)
        else:
            resolved.reference_attachments.setdefault(reference, []).append(attachment)

    return resolved


@dataclass(slots=True)
class TrackedRequest:
    """Dependency bookkeeping for one request."""

    request_id: str
    dependencies: tuple[JobDependency, ...]
    machine: JobStateMachine
    expires_at: float
    checks: int = 0


class DependencyTracker:
    """Per-request dependency map with explicit expiry.

    Every entry expires ``ttl_seconds`` after it was first tracked; expired
    entries are evicted on each access.
    """

    def __init__(
        self,
        ttl_seconds: float = DEPENDENCY_MAP_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize an empty tracker."""
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, TrackedRequest] = {}

    def __len__(self) -> int:
        self.evict_expired()
        return len(self._entries)

    def __contains__(self, request_id: object) -> bool:
        self.evict_expired()
        return request_id in self._entries

    def evict_expired(self) -> int:
        """Drop entries past their expiry and return how many were dropped."""
        now = self._clock()
        expired = [
            request_id
            for request_id, entry in self._entries.items()
            if entry.expires_at <= now
        ]
        for request_id in expired:
            del self._entries[request_id]
        if expired:
            logger.debug("Evicted %s expired dependency entries", len(expired))
        return len(expired)

    def track(
        self,
        request_id: str,
        dependencies: Sequence[JobDependency],
    ) -> TrackedRequest:
        """Return the entry for `request_id`, creating it on first sight."""
        self.evict_expired()
        entry = self._entries.get(request_id)
        if entry is not None:
            entry.checks += 1
            return entry
        now = self._clock()
        entry = TrackedRequest(
            request_id=request_id,
            dependencies=tuple(dependencies),
            machine=JobStateMachine(request_id),
            expires_at=now + self.ttl_seconds,
            checks=1,
        )
        self._entries[request_id] = entry
        return entry

    def get(self, request_id: str) -> TrackedRequest | None:
        """Return the live entry for `request_id`, if any."""
        self.evict_expired()
        return self._entries.get(request_id)

    def release(self, request_id: str) -> None:
        """Forget `request_id` once its job has left the waiting states."""
        self._entries.pop(request_id, None)
        self.evict_expired()
