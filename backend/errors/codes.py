"""
Error codes for Parley.

Provides a standardized taxonomy of error codes organized by category.
Use these codes consistently across HTTP error bodies and stream events.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for Parley.

    Categories:
    - VALIDATION_*: Request validation errors (rejected before streaming)
    - AUTH_*: Caller identity errors
    - NOT_FOUND_*: Resource not found errors
    - LLM_*: Model provider errors
    - EXTERNAL_*: External collaborator errors (evidence pipeline, sandbox)
    - STORE_*: Durable store errors
    - STREAM_*: Streaming lifecycle errors
    - INTERNAL_*: Internal/unexpected errors
    """

    # Validation errors (input checking)
    VALIDATION_MISSING_PARAM = "VALIDATION_MISSING_PARAM"
    VALIDATION_INVALID_FORMAT = "VALIDATION_INVALID_FORMAT"
    VALIDATION_PROJECT_MISMATCH = "VALIDATION_PROJECT_MISMATCH"

    # Caller identity
    AUTH_UNAUTHENTICATED = "AUTH_UNAUTHENTICATED"

    # Not found errors (missing resources)
    NOT_FOUND_CONVERSATION = "NOT_FOUND_CONVERSATION"
    NOT_FOUND_MESSAGE = "NOT_FOUND_MESSAGE"
    NOT_FOUND_TOPIC = "NOT_FOUND_TOPIC"
    NOT_FOUND_FILE = "NOT_FOUND_FILE"

    # LLM errors (model interactions)
    LLM_UNAVAILABLE = "LLM_UNAVAILABLE"
    LLM_TIMEOUT = "LLM_TIMEOUT"
    LLM_PARSE_FAILED = "LLM_PARSE_FAILED"
    LLM_RESPONSE_INVALID = "LLM_RESPONSE_INVALID"
    LLM_STREAM_FAILED = "LLM_STREAM_FAILED"

    # External service errors
    EXTERNAL_EVIDENCE_FAILED = "EXTERNAL_EVIDENCE_FAILED"
    EXTERNAL_SANDBOX_FAILED = "EXTERNAL_SANDBOX_FAILED"
    EXTERNAL_NETWORK_ERROR = "EXTERNAL_NETWORK_ERROR"

    # Durable store errors
    STORE_WRITE_FAILED = "STORE_WRITE_FAILED"

    # Stream lifecycle
    STREAM_CANCELLED = "STREAM_CANCELLED"

    # Internal errors (unexpected failures)
    INTERNAL_UNEXPECTED = "INTERNAL_UNEXPECTED"
