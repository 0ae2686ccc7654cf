"""Custom exceptions for rag-context."""


class RagContextError(Exception):
    """Base class for all rag-context errors."""

    pass


class ValidationError(RagContextError):
    """Raised when caller input fails validation."""

    pass


class EmbeddingUnavailableError(RagContextError):
    """Raised when the embedding provider cannot produce a vector."""

    pass


class RetrievalError(RagContextError):
    """Raised when every retrieval stage failed for a query."""

    pass


class CacheCorruptionError(RagContextError):
    """Raised when cache validation finds inconsistent state."""

    pass


class PipelineAbortedError(RagContextError):
    """Raised when a critical stage fails under the fail-fast policy."""

    def __init__(self, stage: str, cause: BaseException | None = None) -> None:
        super().__init__(f"Pipeline aborted at stage '{stage}'")
        self.stage = stage
        self.cause = cause


class ContextManagementError(RagContextError):
    """Raised when both a primary operation and its fallback failed.

    Carries both causes so callers can tell a flaky backend from a broken
    fallback.
    """

    def __init__(
        self,
        message: str,
        operation: str = "unknown",
        attempts: int = 0,
        primary_error: BaseException | None = None,
        fallback_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.attempts = attempts
        self.primary_error = primary_error
        self.fallback_error = fallback_error
