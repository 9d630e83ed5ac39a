"""Application error taxonomy.

Pure view computations never raise these for bad upstream data; they degrade
instead. These exceptions mark the boundaries where a caller must react.
"""


class AppError(Exception):
    """Base class for errors surfaced to the orchestration layer."""

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail


class NotFoundError(AppError):
    """Requested record does not exist (or is soft-deleted)."""


class RecordKindError(AppError):
    """An upstream record was stamped with an unexpected kind."""


class CollaboratorError(AppError):
    """An external collaborator (extractor, analyzer, notability, publisher) failed."""

    def __init__(self, detail: str = "", retryable: bool = False):
        super().__init__(detail)
        self.retryable = retryable


class CollaboratorTimeoutError(CollaboratorError):
    """A bounded collaborator call exceeded its timeout."""

    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(f"{operation} timed out after {timeout_seconds:g}s", retryable=False)
        self.operation = operation
        self.timeout_seconds = timeout_seconds
