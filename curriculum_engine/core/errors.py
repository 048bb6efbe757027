"""Exception taxonomy for the curriculum engine.

Callers branch on the class, never on message text:

- ValidationError: bad caller input, 4xx semantics, never retried
- NotFoundError: referenced record does not exist
- TransientProviderError: timeouts, connection failures, 5xx/429 from a
  provider; batch operations may retry these
- DataIntegrityError: corrupted provider data (count/dimension mismatch,
  malformed JSON); fatal for the unit of work in every mode
- UnsupportedDocumentError: document content that can never be processed
"""


class CurriculumEngineError(Exception):
    """Base error for the engine."""

    retryable: bool = False


# =============================================================================
# Caller errors
# =============================================================================


class ValidationError(CurriculumEngineError):
    """Input rejected before any work was done."""


class InvalidStageError(ValidationError):
    """Stage id outside Q1..Q10."""

    def __init__(self, stage: str | None):
        self.stage = stage
        super().__init__(f"Invalid stage: {stage}")


class MissingRequiredFieldError(ValidationError):
    """A precondition fact the operation needs is absent."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class NotFoundError(CurriculumEngineError):
    """Referenced record does not exist."""


# =============================================================================
# Provider errors
# =============================================================================


class TransientProviderError(CurriculumEngineError):
    """Provider failure expected to clear on a later attempt."""

    retryable = True

    def __init__(self, message: str, provider: str | None = None, status_code: int | None = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)


class ProviderTimeoutError(TransientProviderError):
    """A provider call exceeded its timeout."""


class EmbeddingTimeoutError(ProviderTimeoutError):
    """Embedding provider call timed out."""


class LLMTimeoutError(ProviderTimeoutError):
    """Generation exceeded its total or idle timeout."""


class ProviderUnavailableError(TransientProviderError):
    """Connection refused, 5xx or rate limited."""


class ProviderRequestError(CurriculumEngineError):
    """Provider rejected the request (4xx other than 429)."""

    def __init__(self, message: str, provider: str | None = None, status_code: int | None = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)


class LLMError(CurriculumEngineError):
    """Chat provider failure with a classified code."""

    def __init__(self, message: str, code: str, retryable: bool = False, status_code: int | None = None):
        self.code = code
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)


# =============================================================================
# Data errors
# =============================================================================


class DataIntegrityError(CurriculumEngineError):
    """Provider or store returned data that cannot be trusted."""


class UnsupportedDocumentError(CurriculumEngineError):
    """Document content cannot be extracted; retrying will not help."""
