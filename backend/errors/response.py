"""
Standard error response builders for Parley.

Provides consistent response formats for HTTP error bodies and for the
`{error}` event on the chat stream.
"""

from typing import Any, Optional
from .codes import ErrorCode
from .exceptions import ParleyError


def error_response(error: ParleyError | Exception, step: Optional[str] = None, include_context: bool = True) -> dict:
    """Build a standard error response dictionary.

    Args:
        error: The exception to convert to a response
        step: Optional pipeline step name for context
        include_context: Whether to include the context dict (disable for privacy)

    Returns:
        Standard error response dict with success=False

    Example:
        >>> from errors import ValidationError, error_response
        >>> err = ValidationError("Missing parameter", parameter="conversationId")
        >>> error_response(err, step="prepare")
        {
            "success": False,
            "error": {
                "code": "VALIDATION_MISSING_PARAM",
                "message": "Missing parameter",
                "details": None,
                "step": "prepare",
                "recoverable": True,
                "context": {"parameter": "conversationId"}
            }
        }
    """
    if isinstance(error, ParleyError):
        return {
            "success": False,
            "error": {
                "code": error.code.value,
                "message": error.message,
                "details": error.details,
                "step": step,
                "recoverable": error.recoverable,
                "context": error.context if include_context else None,
            },
        }

    # Fallback for non-Parley exceptions
    return {
        "success": False,
        "error": {
            "code": ErrorCode.INTERNAL_UNEXPECTED.value,
            "message": str(error),
            "details": None,
            "step": step,
            "recoverable": False,
            "context": None,
        },
    }


def success_response(data: Optional[dict] = None, **kwargs: Any) -> dict:
    """Build a standard success response dictionary.

    Args:
        data: Optional data dict to include in response
        **kwargs: Additional key-value pairs to include at top level

    Returns:
        Standard success response dict with success=True

    Example:
        >>> success_response(deleted="msg-1")
        {"success": True, "deleted": "msg-1"}
    """
    response = {"success": True}

    if data:
        response.update(data)
    if kwargs:
        response.update(kwargs)

    return response


def stream_error_code(error: ParleyError | Exception) -> str:
    """Short error tag for the `{error}` stream event.

    Internal details never reach the client mid-stream; the tag is enough
    for it to show a retry affordance.
    """
    if isinstance(error, ParleyError):
        if error.code in (ErrorCode.LLM_STREAM_FAILED, ErrorCode.LLM_UNAVAILABLE, ErrorCode.LLM_TIMEOUT):
            return "upstream_error"
        if error.code == ErrorCode.STORE_WRITE_FAILED:
            return "persist_failed"
        return error.code.value.lower()
    return "upstream_error"
