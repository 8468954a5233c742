"""
Parley Error Handling Module

Provides standardized error codes, exceptions, and response builders
for consistent error handling across the chat pipeline.

Usage:
    from errors import (
        # Error codes
        ErrorCode,

        # Exceptions
        ParleyError,
        ValidationError,
        AuthenticationError,
        NotFoundError,
        LLMError,
        ExternalServiceError,
        StoreError,
        StreamCancelled,

        # Response builders
        error_response,
        success_response,
        stream_error_code,

        # Helpers
        soft_fail,
        log_error,
        log_task_failure,
    )

Example:
    from errors import NotFoundError, ValidationError

    async def prepare(request, user_id):
        if not request.message.strip():
            raise ValidationError(
                "Message is required",
                parameter="message",
            )

        conversation = await store.get_conversation(request.conversation_id)
        if conversation is None:
            raise NotFoundError(
                "Conversation not found",
                resource_type="conversation",
                resource_id=request.conversation_id,
            )
"""

from .codes import ErrorCode
from .exceptions import (
    ParleyError,
    ValidationError,
    AuthenticationError,
    NotFoundError,
    LLMError,
    ExternalServiceError,
    StoreError,
    StreamCancelled,
)
from .response import (
    error_response,
    success_response,
    stream_error_code,
)
from .handlers import (
    soft_fail,
    log_error,
    log_task_failure,
)

__all__ = [
    # Error codes
    "ErrorCode",
    # Exceptions
    "ParleyError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "LLMError",
    "ExternalServiceError",
    "StoreError",
    "StreamCancelled",
    # Response builders
    "error_response",
    "success_response",
    "stream_error_code",
    # Helpers
    "soft_fail",
    "log_error",
    "log_task_failure",
]
