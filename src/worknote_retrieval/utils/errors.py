"""Custom exception classes for the work note retrieval service."""

from enum import Enum
from typing import Any, Dict, Optional


class RetrievalException(Exception):
    """Base exception for all retrieval engine errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response."""
        return {
            "error": {
                "message": self.message,
                "code": self.code,
                "status_code": self.status_code,
                "details": self.details,
            }
        }


class ChunkingError(RetrievalException):
    """Exception raised for text chunking errors (including malformed chunk ids)."""

    def __init__(
        self,
        message: str = "Text chunking failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=422,
            code="CHUNKING_ERROR",
            details=details,
        )


class EmbeddingError(RetrievalException):
    """Exception raised for embedding generation errors."""

    def __init__(
        self,
        message: str = "Embedding generation failed",
        model: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 502,
        code: str = "EMBEDDING_ERROR",
    ):
        error_details = details or {}
        if model:
            error_details["model"] = model
        super().__init__(
            message=message,
            status_code=status_code,
            code=code,
            details=error_details,
        )


class EmbeddingRateLimitError(EmbeddingError):
    """The embedding backend answered HTTP 429."""

    def __init__(
        self,
        message: str = "Embedding rate limit exceeded",
        model: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            model=model,
            details=details,
            status_code=429,
            code="AI_RATE_LIMIT",
        )


class MalformedResponseError(RetrievalException):
    """An upstream payload failed validation."""

    def __init__(
        self,
        service: str,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        error_details["service"] = service
        super().__init__(
            message=message or f"Malformed response from '{service}'",
            status_code=502,
            code="MALFORMED_RESPONSE",
            details=error_details,
        )


class VectorIndexError(RetrievalException):
    """Exception raised for Qdrant operation errors."""

    def __init__(
        self,
        message: str = "Vector index operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=502,
            code="VECTOR_INDEX_ERROR",
            details=details,
        )


class LexicalSearchError(RetrievalException):
    """Exception raised when the full-text query fails."""

    def __init__(
        self,
        message: str = "Lexical search failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=502,
            code="LEXICAL_SEARCH_ERROR",
            details=details,
        )


class DatabaseError(RetrievalException):
    """Exception raised for database errors."""

    def __init__(
        self,
        message: str = "Database operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=500,
            code="DATABASE_ERROR",
            details=details,
        )


class NotFoundError(RetrievalException):
    """Exception raised when a resource is not found."""

    def __init__(
        self,
        resource: str = "Resource",
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        message = f"{resource} not found"
        if resource_id:
            message += f" with id: {resource_id}"
        error_details = details or {}
        error_details["resource"] = resource
        if resource_id:
            error_details["resource_id"] = resource_id
        super().__init__(
            message=message,
            status_code=404,
            code="NOT_FOUND",
            details=error_details,
        )


class ConflictError(RetrievalException):
    """Exception raised when a conditional write matched no row."""

    def __init__(
        self,
        message: str = "Resource conflict",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=409,
            code="CONFLICT",
            details=details,
        )


class ConfigurationError(RetrievalException):
    """Missing credentials or index binding."""

    def __init__(
        self,
        message: str = "Service is not configured",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=500,
            code="CONFIGURATION_ERROR",
            details=details,
        )


class EmbeddingFailureReason(str, Enum):
    """Classified outcome of a failed or abandoned embedding run."""

    UNKNOWN = "UNKNOWN"
    NOT_FOUND = "NOT_FOUND"
    STALE_VERSION = "STALE_VERSION"
    PREPARE_FAILED = "PREPARE_FAILED"
    UPSERT_FAILED = "UPSERT_FAILED"


class EmbeddingPipelineError(RetrievalException):
    """A per-document embedding run failed with a classified reason."""

    def __init__(
        self,
        reason: EmbeddingFailureReason,
        message: str,
        work_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.reason = reason
        error_details = details or {}
        error_details["reason"] = reason.value
        if work_id:
            error_details["work_id"] = work_id
        super().__init__(
            message=message,
            status_code=500,
            code="EMBEDDING_PIPELINE_ERROR",
            details=error_details,
        )


class EmbeddingSkipError(EmbeddingPipelineError):
    """The run was abandoned because the note vanished or was superseded."""


def classify_failure_reason(
    error: BaseException,
    fallback: EmbeddingFailureReason = EmbeddingFailureReason.UNKNOWN,
) -> EmbeddingFailureReason:
    """Map an exception from an embedding run to a failure reason."""
    if isinstance(error, EmbeddingPipelineError):
        return error.reason
    return fallback


def is_transient(error: BaseException) -> bool:
    """Rate limits and timeouts are worth retrying as-is."""
    if isinstance(error, EmbeddingRateLimitError):
        return True
    if isinstance(error, EmbeddingPipelineError) and error.__cause__ is not None:
        return is_transient(error.__cause__)
    return isinstance(error, (TimeoutError, ConnectionError))
