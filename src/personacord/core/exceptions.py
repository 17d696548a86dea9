"""Custom exceptions for the generation pipeline."""

EMPTY_RESPONSE_MESSAGE = "LLM returned no usable content"


class PipelineError(RuntimeError):
    """Base class for errors raised by pipeline stages."""

    stage: str = "unknown"


class TokenBudgetExceededError(PipelineError):
    """Raised when fixed prompt costs alone exceed the context window."""

    stage = "TokenBudget"

    def __init__(self, *, required_tokens: int, context_window: int) -> None:
        """Record the fixed cost that did not fit."""
        self.required_tokens = required_tokens
        self.context_window = context_window
        super().__init__(
            f"System prompt and current message need {required_tokens} tokens "
            f"but the context window is {context_window}",
        )


class PromptAssemblyError(PipelineError):
    """Raised when a safe prompt cannot be produced."""

    stage = "PromptAssembly"


class DependencyTimeoutError(PipelineError):
    """Raised when preprocessing dependencies exceed the wait budget."""

    stage = "DependencyResolution"

    def __init__(self, request_id: str, waited_seconds: float) -> None:
        """Initialize the timeout error for `request_id`."""
        self.request_id = request_id
        self.waited_seconds = waited_seconds
        super().__init__(
            f"Dependencies for {request_id} not ready after {waited_seconds:.1f}s",
        )


class InvalidStateTransitionError(PipelineError):
    """Raised when a job state machine receives an illegal transition."""

    stage = "DependencyResolution"

    def __init__(self, current: str, target: str) -> None:
        """Initialize the error with both states."""
        self.current = current
        self.target = target
        super().__init__(f"Cannot move job from '{current}' to '{target}'")


class EmptyResponseError(PipelineError):
    """Raised when the model output is empty after post-processing."""

    stage = "Generation"


class MediaNotFoundError(RuntimeError):
    """Raised when an attachment URL no longer resolves."""

    def __init__(self, url: str) -> None:
        """Initialize with the missing attachment URL."""
        self.url = url
        super().__init__(f"Attachment not found: {url}")


class JobValidationError(ValueError):
    """Raised when a job payload fails schema validation."""

    def __init__(self, message: str, *, issues: list[str] | None = None) -> None:
        """Initialize with a summary and the individual validation issues."""
        self.issues = issues or []
        super().__init__(message)
