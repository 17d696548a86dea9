"""Internal data models shared across pipeline stages."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

AttachmentKind = Literal["image", "audio", "voice", "text", "other"]


@dataclass(frozen=True, slots=True)
class MemoryEntry:
    """One retrieved long-term memory.

    `included_in_prompt` is decided by the token budget allocator, not by the
    retriever.
    """

    id: str
    score: float
    content: str
    created_at: datetime | None = None
    included_in_prompt: bool = False


@dataclass(frozen=True, slots=True)
class ProcessedAttachment:
    """Text stand-in for an attachment produced by a preprocessing job."""

    kind: AttachmentKind
    description: str
    url: str | None = None
    name: str | None = None
    source_reference_number: int | None = None


@dataclass(slots=True)
class PreprocessingResults:
    """Dependency outputs merged into a generation job.

    Attachments of the triggering message go to `processed_attachments`;
    attachments of a referenced message are keyed by its reference number.
    """

    processed_attachments: list[ProcessedAttachment] = field(default_factory=list)
    transcriptions: list[str] = field(default_factory=list)
    reference_attachments: dict[int, list[ProcessedAttachment]] = field(
        default_factory=dict,
    )
    unavailable: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        """Return True when no dependency contributed anything."""
        return not (
            self.processed_attachments
            or self.transcriptions
            or self.reference_attachments
        )
