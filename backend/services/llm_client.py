"""
LLM Client - wraps the OpenAI SDK (Responses API) for the chat pipeline.

One AsyncOpenAI handle is built at startup and injected; nothing here
keeps module-level client state.

Provides:
- ModelProvider.open_stream(): streamed reply, yielding plain-dict events
- ModelProvider.complete_json(): small JSON policy calls (routers)
- Document index helpers for deferred attachment uploads
- Sandbox file downloads for rewritten `sandbox:` links
- Circuit breaker and transient-error retry around stream opening

Key translations:
- Turns: {"role", "content", "images"?} -> Responses input items
- Events: SDK event models -> dicts (parsed into typed variants by
  routers.chat_orchestration.events)
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from openai import AsyncOpenAI

from errors import ExternalServiceError, LLMError
from logging_config import log_llm

logger = logging.getLogger(__name__)

# Retry settings for transient provider errors while opening a stream
MODEL_RETRY_MAX = 2
MODEL_RETRY_DELAY = 1.0  # seconds

_PERMANENT_ERROR_PATTERNS = [
    "model not found",
    "does not exist",
    "invalid model",
    "invalid api key",
    "incorrect api key",
]

_TRANSIENT_ERROR_PATTERNS = [
    "connection refused",
    "connection reset",
    "temporarily unavailable",
    "overloaded",
    "rate limit",
    "502",
    "503",
]


def is_retryable_error(error: Exception) -> bool:
    """Check if error is transient and worth retrying (not permanent failures)."""
    error_str = str(error).lower()
    if any(p in error_str for p in _PERMANENT_ERROR_PATTERNS):
        return False
    return any(p in error_str for p in _TRANSIENT_ERROR_PATTERNS)


class _CircuitBreaker:
    """Prevents cascading failures when the provider is down."""

    def __init__(self, failure_threshold: int = 5, recovery_timeout: int = 30):
        self.failures = 0
        self.threshold = failure_threshold
        self.timeout = recovery_timeout
        self.last_failure_time = 0.0
        self.state = "closed"  # closed, open, half_open

    def is_open(self) -> bool:
        if self.state == "open":
            if time.time() - self.last_failure_time > self.timeout:
                self.state = "half_open"
                return False
            return True
        return False

    def record_success(self) -> None:
        self.failures = 0
        self.state = "closed"

    def record_failure(self) -> None:
        self.failures += 1
        self.last_failure_time = time.time()
        if self.failures >= self.threshold:
            self.state = "open"
            logger.error("Circuit breaker OPEN - model provider unavailable")


@dataclass
class ProviderRequest:
    """Everything the provider needs for one streamed reply."""

    model: str
    instructions: str
    ordered_turns: List[Dict[str, Any]]
    tools: List[Dict[str, Any]] = field(default_factory=list)
    tool_choice: Optional[str] = None
    reasoning_effort: Optional[str] = None
    cache_key: Optional[str] = None
    user_id: Optional[str] = None


def _translate_turns(turns: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Translate internal turns to Responses API input items.

    Handles inline images (data URLs) on user turns.
    """
    translated = []
    for turn in turns:
        role = turn.get("role", "user")
        content = turn.get("content", "")
        images = turn.get("images") or []

        if images and role == "user":
            parts: List[Dict[str, Any]] = []
            if content:
                parts.append({"type": "input_text", "text": content})
            for url in images:
                parts.append({"type": "input_image", "image_url": url})
            translated.append({"role": role, "content": parts})
        else:
            translated.append({"role": role, "content": content if isinstance(content, str) else json.dumps(content)})
    return translated


def _event_to_dict(event: Any) -> Dict[str, Any]:
    if isinstance(event, dict):
        return event
    if hasattr(event, "model_dump"):
        return event.model_dump()
    return {"type": getattr(event, "type", "unknown")}


def _parse_json_object(text: str) -> Dict[str, Any]:
    cleaned = (text or "").replace("```json", "").replace("```", "").strip()
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise LLMError("Policy output was not valid JSON", details=str(e), error_type="parse") from e
    if not isinstance(parsed, dict):
        raise LLMError("Policy output was not a JSON object", error_type="invalid")
    return parsed


class ProviderStream:
    """An open provider stream. Iterate for event dicts; close() cancels server-side."""

    def __init__(self, sdk_stream: Any, model: str):
        self._stream = sdk_stream
        self.model = model
        self.response_id: Optional[str] = None
        self._closed = False

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Dict[str, Any]]:
        async for event in self._stream:
            data = _event_to_dict(event)
            response = data.get("response")
            if self.response_id is None and isinstance(response, dict) and response.get("id"):
                self.response_id = response["id"]
            yield data

    async def close(self) -> None:
        """Close the HTTP stream, which stops generation upstream. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        close = getattr(self._stream, "close", None)
        if close is not None:
            result = close()
            if asyncio.iscoroutine(result):
                await result


class ModelProvider:
    """Model provider facade over one AsyncOpenAI client."""

    def __init__(self, client: AsyncOpenAI, timeout: float = 60.0):
        self.client = client
        self.timeout = timeout
        self.breaker = _CircuitBreaker()

    @classmethod
    def from_config(cls, config) -> "ModelProvider":
        """Build the provider from runtime config (called once at startup)."""
        client = AsyncOpenAI(
            api_key=config.openai_api_key or None,
            base_url=config.openai_base_url or None,
            timeout=config.llm_timeout_s,
        )
        return cls(client, timeout=config.llm_timeout_s)

    async def open_stream(self, request: ProviderRequest) -> ProviderStream:
        """Open a streamed response, retrying transient failures.

        Raises:
            LLMError: Circuit open, or the stream could not be opened
        """
        if self.breaker.is_open():
            raise LLMError(
                "Model provider temporarily unavailable (circuit breaker open)",
                error_type="circuit_open",
                model=request.model,
            )

        kwargs: Dict[str, Any] = {
            "model": request.model,
            "instructions": request.instructions,
            "input": _translate_turns(request.ordered_turns),
            "stream": True,
        }
        if request.tools:
            kwargs["tools"] = request.tools
            if request.tool_choice:
                kwargs["tool_choice"] = request.tool_choice
        if request.reasoning_effort:
            kwargs["reasoning"] = {"effort": request.reasoning_effort, "summary": "auto"}
        if request.cache_key:
            kwargs["prompt_cache_key"] = request.cache_key
        if request.user_id:
            kwargs["safety_identifier"] = request.user_id

        last_error: Optional[Exception] = None
        for attempt in range(MODEL_RETRY_MAX + 1):
            if attempt > 0:
                delay = MODEL_RETRY_DELAY * (2 ** (attempt - 1))
                logger.info(f"Retry {attempt}/{MODEL_RETRY_MAX} for {request.model} after {delay:.1f}s")
                await asyncio.sleep(delay)

            log_llm(logger, "start", model=request.model)
            try:
                sdk_stream = await self.client.responses.create(**kwargs)
                self.breaker.record_success()
                return ProviderStream(sdk_stream, request.model)
            except Exception as e:
                last_error = e
                self.breaker.record_failure()
                if attempt < MODEL_RETRY_MAX and is_retryable_error(e):
                    logger.warning(f"Transient provider error for {request.model}: {e}")
                    continue
                break

        raise LLMError(
            "Model stream failed to start",
            details=str(last_error),
            model=request.model,
            error_type="stream",
        ) from last_error

    async def cancel(self, stream: Optional[ProviderStream]) -> None:
        """Request server-side cancellation of an open stream."""
        if stream is None:
            return
        await stream.close()
        logger.info(f"Provider stream cancelled (response={stream.response_id or 'pending'})")

    async def complete_json(
        self,
        model: str,
        instructions: str,
        payload: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Run a short non-streamed policy call that must answer with a JSON object.

        Raises:
            LLMError: On timeout, provider failure, or unparseable output
        """
        if self.breaker.is_open():
            raise LLMError("Model provider temporarily unavailable", error_type="circuit_open", model=model)

        start_time = time.time()
        log_llm(logger, "start", model=model)
        try:
            response = await asyncio.wait_for(
                self.client.responses.create(
                    model=model,
                    instructions=instructions,
                    input=json.dumps(payload, default=str),
                    text={"format": {"type": "json_object"}},
                ),
                timeout=timeout or self.timeout,
            )
        except asyncio.TimeoutError as e:
            self.breaker.record_failure()
            raise LLMError(
                f"Policy call timed out after {timeout or self.timeout}s", model=model, error_type="timeout"
            ) from e
        except LLMError:
            raise
        except Exception as e:
            self.breaker.record_failure()
            raise LLMError("Policy call failed", details=str(e), model=model) from e

        self.breaker.record_success()
        log_llm(logger, "end", model=model, duration=time.time() - start_time)
        return _parse_json_object(getattr(response, "output_text", "") or "")

    async def ensure_document_index(self, conversation_id: str, existing_id: Optional[str] = None) -> str:
        """Return the conversation's document index id, creating one if needed."""
        if existing_id:
            return existing_id
        store = await self.client.vector_stores.create(name=f"conversation-{conversation_id}")
        logger.info(f"Document index created for conversation {conversation_id}: {store.id}")
        return store.id

    async def upload_file(self, index_id: str, filename: str, data: bytes, mime_type: str) -> str:
        """Upload one attachment into a document index."""
        uploaded = await self.client.vector_stores.files.upload_and_poll(
            vector_store_id=index_id,
            file=(filename, data, mime_type),
        )
        return uploaded.id

    async def download_container_file(self, container_id: str, path: str) -> Optional[bytes]:
        """Fetch a file the code sandbox wrote, by its `/mnt/data/...` path.

        Returns:
            File bytes, or None when the container has no file at that path

        Raises:
            ExternalServiceError: The sandbox could not be reached
        """
        try:
            file_id = None
            async for item in self.client.containers.files.list(container_id):
                if item.path == path:
                    file_id = item.id
                    break
            if file_id is None:
                return None
            content = await self.client.containers.files.content.retrieve(file_id, container_id=container_id)
            return content.content
        except Exception as e:
            raise ExternalServiceError(
                "Sandbox file download failed",
                details=str(e),
                service="sandbox",
                container_id=container_id,
            ) from e
