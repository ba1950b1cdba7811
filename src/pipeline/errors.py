"""
Exception hierarchy for pipeline stages.

Stages raise these for programmer errors (missing deps/inputs) and for
validation failures that must fail the stage. Best-effort sites (vector store,
graph mirror, artifact cache) log and swallow instead of raising.
"""
from __future__ import annotations


class PipelineError(Exception):
    """Base class for all stage errors."""


class MissingDependencyError(PipelineError):
    """A stage was invoked without one of its required collaborators."""

    def __init__(self, stage: str):
        super().__init__(f"{stage}: missing deps")
        self.stage = stage


class MissingInputError(PipelineError):
    """A required stage input (owner, material set, saga) was empty."""

    def __init__(self, stage: str, field: str):
        super().__init__(f"{stage}: missing {field}")
        self.stage = stage
        self.field = field


class StageValidationError(PipelineError):
    """Generated or loaded data failed a hard validation check."""


class LLMError(PipelineError):
    """The LLM or embedding call failed after retries."""


class ContextLengthError(LLMError):
    """The prompt exceeded the model's context window; retry with a smaller budget."""


_CONTEXT_MARKERS = (
    "context length",
    "context_length",
    "maximum context",
    "too many tokens",
    "token limit",
    "exceeds the maximum number of tokens",
    "input token count",
    "prompt is too long",
)


def is_context_length_error(exc: BaseException | None) -> bool:
    """True when the error (or its cause) reports a context-window overflow."""
    while exc is not None:
        if isinstance(exc, ContextLengthError):
            return True
        msg = str(exc).lower()
        if any(marker in msg for marker in _CONTEXT_MARKERS):
            return True
        exc = exc.__cause__
    return False
