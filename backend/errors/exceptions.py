"""
Custom exception hierarchy for Parley.

All exceptions inherit from ParleyError and include:
- code: ErrorCode for categorization
- message: Human-readable error message
- details: Optional additional context
- recoverable: Whether the user can retry/fix the issue
- context: Additional key-value pairs for debugging
- http_status: Status used when the error is rejected before streaming
"""

from typing import Any, Optional
from .codes import ErrorCode


def _present(**fields: Any) -> dict:
    """Keyword context minus unset values."""
    return {k: v for k, v in fields.items() if v is not None and v != ""}


class ParleyError(Exception):
    """Base exception for all Parley errors.

    Attributes:
        code: The ErrorCode categorizing this error
        message: Human-readable error message
        details: Optional additional context for the user
        recoverable: Whether the error can be resolved by user action
        context: Additional debugging information
    """

    code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED
    recoverable: bool = False
    http_status: int = 500

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        code: Optional[ErrorCode] = None,
        recoverable: Optional[bool] = None,
        **context: Any,
    ):
        self.message = message
        self.details = details
        self.context = context if context else None

        # Allow overriding class defaults
        if code is not None:
            self.code = code
        if recoverable is not None:
            self.recoverable = recoverable

        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message

    def to_dict(self) -> dict:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
            "context": self.context,
        }


class ValidationError(ParleyError):
    """Error during request validation."""

    code = ErrorCode.VALIDATION_MISSING_PARAM
    recoverable = True
    http_status = 400

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        parameter: Optional[str] = None,
        expected: Optional[str] = None,
        received: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(
            message, details, **context, **_present(parameter=parameter, expected=expected, received=received)
        )


class AuthenticationError(ParleyError):
    """Caller identity is missing."""

    code = ErrorCode.AUTH_UNAUTHENTICATED
    recoverable = False
    http_status = 401


class NotFoundError(ParleyError):
    """A conversation, message or topic is missing or not visible to the caller.

    Ownership failures surface as not-found so ids of other users' rows
    are never confirmed.
    """

    code = ErrorCode.NOT_FOUND_CONVERSATION
    recoverable = True
    http_status = 404

    CODES = {
        "message": ErrorCode.NOT_FOUND_MESSAGE,
        "topic": ErrorCode.NOT_FOUND_TOPIC,
        "file": ErrorCode.NOT_FOUND_FILE,
    }

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(
            message,
            details,
            code=self.CODES.get(resource_type or "", ErrorCode.NOT_FOUND_CONVERSATION),
            **context,
            **_present(resource_type=resource_type, resource_id=resource_id),
        )


class LLMError(ParleyError):
    """Model provider failure: stream open, mid-stream, or a policy call."""

    code = ErrorCode.LLM_UNAVAILABLE
    recoverable = False
    http_status = 502

    CODES = {
        "timeout": ErrorCode.LLM_TIMEOUT,
        "parse": ErrorCode.LLM_PARSE_FAILED,
        "invalid": ErrorCode.LLM_RESPONSE_INVALID,
        "stream": ErrorCode.LLM_STREAM_FAILED,
    }

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        model: Optional[str] = None,
        error_type: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(
            message,
            details,
            code=self.CODES.get(error_type or "", ErrorCode.LLM_UNAVAILABLE),
            **context,
            **_present(model=model),
        )


class ExternalServiceError(ParleyError):
    """Evidence pipeline or sandbox failure. Always soft: the reply goes on without it."""

    code = ErrorCode.EXTERNAL_NETWORK_ERROR
    recoverable = True
    http_status = 502

    CODES = {
        "evidence": ErrorCode.EXTERNAL_EVIDENCE_FAILED,
        "sandbox": ErrorCode.EXTERNAL_SANDBOX_FAILED,
    }

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        service: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        super().__init__(
            message,
            details,
            code=self.CODES.get(service or "", ErrorCode.EXTERNAL_NETWORK_ERROR),
            **context,
            **_present(service=service, status_code=status_code),
        )


class StoreError(ParleyError):
    """Error reading or writing the durable store."""

    code = ErrorCode.STORE_WRITE_FAILED
    recoverable = True
    http_status = 503

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        operation: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(message, details, **context, **_present(operation=operation))


class StreamCancelled(ParleyError):
    """The client went away. Not a failure; only unpersisted state is cleaned up."""

    code = ErrorCode.STREAM_CANCELLED
    recoverable = True
    http_status = 499
