"""Custom exception classes for the application."""

from typing import Optional


class DocflowError(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class APIClientError(DocflowError):
    """Raised when an external API call fails."""

    pass


class ProviderError(APIClientError):
    """Raised when an LLM provider call fails."""

    def __init__(
        self,
        message: str,
        provider: str = "",
        model: str = "",
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message, original_error=original_error)
        self.provider = provider
        self.model = model

    @property
    def kind(self) -> str:
        return "provider_error"


class TransientProviderError(ProviderError):
    """Provider failure that may succeed on redelivery."""

    @property
    def kind(self) -> str:
        return "transient"


class ProviderTimeoutError(TransientProviderError):
    """Provider call exceeded its timeout."""

    @property
    def kind(self) -> str:
        return "timeout"


class ProviderRateLimitError(TransientProviderError):
    """Provider answered with a rate-limit response."""

    @property
    def kind(self) -> str:
        return "rate_limit"


class MalformedOutputError(TransientProviderError):
    """Provider output could not be parsed or validated."""

    @property
    def kind(self) -> str:
        return "malformed_output"


class ProviderCancelledError(TransientProviderError):
    """Provider call cancelled because the stage deadline passed."""

    @property
    def kind(self) -> str:
        return "cancelled"


class PermanentProviderError(ProviderError):
    """Provider failure that will not succeed on retry (auth, bad config)."""

    @property
    def kind(self) -> str:
        return "permanent"


class ConfigurationError(DocflowError):
    """Raised when configuration is invalid or missing."""

    pass


class TemplateNotFoundError(ConfigurationError):
    """No active prompt template exists for a category."""

    pass


class TemplateRenderError(ConfigurationError):
    """A prompt template could not be rendered."""

    pass


class PersistenceClaimConflictError(DocflowError):
    """Another worker already holds the processing job lease."""

    def __init__(self, message: str, document_status: Optional[str] = None):
        super().__init__(message)
        self.document_status = document_status


class InvalidTransitionError(DocflowError):
    """A stage transition is not allowed by the pipeline state machine."""

    pass


class DocumentNotFoundError(DocflowError):
    """Document or its processing job does not exist."""

    pass


class StorageError(DocflowError):
    """Object storage read failed."""

    def __init__(
        self,
        message: str,
        transient: bool = False,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message, original_error=original_error)
        self.transient = transient


class AuditLogImmutableError(DocflowError):
    """Raised on any attempt to update or delete an audit log row."""

    pass


class ReviewStateError(DocflowError):
    """Document is not in a state that allows the reviewer action."""

    pass
