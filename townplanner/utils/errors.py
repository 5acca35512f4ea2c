"""Custom exception hierarchy for the town-planning pipeline.

All application exceptions inherit from :class:`TownPlannerError`, which
carries an optional ``provider_name`` so error handlers can identify which
external service (e.g. "openai", "llamacloud", "sqlite") caused the failure,
and a stable class-level ``code`` that is persisted on failed documents,
sections and reports.

The hierarchy is organized by how callers react to it:

    TownPlannerError  (base -- catch-all)
    +-- TransientProviderError     (retryable: timeout, rate limit, 5xx)
    |   +-- ProviderTimeoutError
    |   +-- RateLimitError
    |   +-- ProviderUnavailableError
    +-- LLMError                   (non-retryable generation failure)
    +-- EmbeddingError             (non-retryable embedding failure)
    +-- ParseError                 (document parsing failure)
    |   +-- ParseTimeoutError      (polling budget exhausted)
    +-- MalformedOutputError       (unparseable / incomplete model output)
    +-- RequestValidationError     (bad request, rejected before side effects)
    +-- DimensionMismatchError     (query vs stored embedding dimension)
    +-- IngestionError             (document-level ingestion failure)
    +-- ReportError                (report-level orchestration failure)
    +-- TemplateNotFoundError
    +-- InvalidTransitionError     (illegal status change)
    +-- StoreError
    |   +-- RecordNotFoundError
    +-- ConfigurationError

Only :class:`TransientProviderError` subclasses are retried by
:class:`~townplanner.utils.retry.RetryPolicy`.
"""

from __future__ import annotations


class TownPlannerError(Exception):
    """Base exception for all pipeline errors.

    Every subclass carries a human-readable ``message``, an optional
    ``provider_name`` and a stable ``code``.  ``__str__`` prefixes the
    provider name in brackets for log scanning, e.g.
    ``[openai] Rate limit exceeded``.
    """

    code = "townplanner_error"
    default_message = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        provider_name: str | None = None,
    ) -> None:
        self._message = message or self.default_message
        self._provider_name = provider_name
        super().__init__(self._message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def provider_name(self) -> str | None:
        return self._provider_name

    def __str__(self) -> str:
        if self._provider_name:
            return f"[{self._provider_name}] {self._message}"
        return self._message


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------

class TransientProviderError(TownPlannerError):
    """A provider call failed in a way that may succeed if retried."""

    code = "provider_transient"
    default_message = "Provider temporarily unavailable"


class ProviderTimeoutError(TransientProviderError):
    """An external call exceeded its configured timeout."""

    code = "provider_timeout"
    default_message = "Provider call timed out"


class RateLimitError(TransientProviderError):
    """Raised when a provider's rate limit is exceeded."""

    code = "rate_limited"
    default_message = "Rate limit exceeded"

    def __init__(
        self,
        message: str | None = None,
        provider_name: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
        self._retry_after = retry_after

    @property
    def retry_after(self) -> float | None:
        return self._retry_after


class ProviderUnavailableError(TransientProviderError):
    """Raised when an external service is unreachable or returns a 5xx."""

    code = "provider_unavailable"
    default_message = "Provider unavailable"


class LLMError(TownPlannerError):
    """Raised when a text-generation call fails for a non-transient reason."""

    code = "llm_error"
    default_message = "LLM API call failed"


class EmbeddingError(TownPlannerError):
    """Raised when an embedding call fails for a non-transient reason."""

    code = "embedding_error"
    default_message = "Embedding generation failed"


class ParseError(TownPlannerError):
    """Raised when a document cannot be converted to text."""

    code = "parse_error"
    default_message = "Document parsing failed"


class ParseTimeoutError(ParseError):
    """Raised when an asynchronous parse job exhausts its polling budget."""

    code = "parse_timeout"
    default_message = "Document parsing did not finish in time"


class MalformedOutputError(TownPlannerError):
    """Raised when model output cannot be parsed or lacks required fields."""

    code = "malformed_output"
    default_message = "Provider returned malformed output"


# ---------------------------------------------------------------------------
# Request / domain errors
# ---------------------------------------------------------------------------

class RequestValidationError(TownPlannerError):
    """Raised when a request is missing required parameters."""

    code = "validation_error"
    default_message = "Invalid request"


class DimensionMismatchError(TownPlannerError):
    """Raised when a query vector does not match the indexed dimension."""

    code = "dimension_mismatch"
    default_message = "Embedding dimension mismatch"


class IngestionError(TownPlannerError):
    """Raised when a document cannot be ingested."""

    code = "ingestion_failed"
    default_message = "Document ingestion failed"


class ReportError(TownPlannerError):
    """Raised when report orchestration fails at the report level."""

    code = "report_failed"
    default_message = "Report generation failed"


class TemplateNotFoundError(TownPlannerError):
    """Raised when a report template name is unknown."""

    code = "template_not_found"
    default_message = "Report template not found"


class InvalidTransitionError(TownPlannerError):
    """Raised when a status change is not allowed by the state machine."""

    code = "invalid_transition"
    default_message = "Invalid status transition"


class StoreError(TownPlannerError):
    """Raised when the persistence layer fails."""

    code = "store_error"
    default_message = "Storage operation failed"


class RecordNotFoundError(StoreError):
    """Raised when a record expected to exist is missing."""

    code = "not_found"
    default_message = "Record not found"


class ConfigurationError(TownPlannerError):
    """Raised when required configuration is missing or invalid."""

    code = "configuration_error"
    default_message = "Invalid or missing configuration"


def error_payload(exc: BaseException) -> dict[str, str]:
    """Return the ``{"code", "message"}`` pair persisted for a failure.

    Application errors expose their own code and message.  Anything else
    is reported as ``internal_error`` with a generic message so internal
    details never reach persisted records; the traceback belongs in logs.
    """
    if isinstance(exc, TownPlannerError):
        return {"code": exc.code, "message": str(exc)}
    return {"code": "internal_error", "message": "Internal error while processing"}
