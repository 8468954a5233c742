"""
Streaming Engine - drives one provider stream to a persisted assistant reply.

States:
    STARTING -> STREAMING -> FINALIZING -> DONE
    any state -> ABORTED (client went away)

STARTING races "stream opened and first event read" against the start
timeout. A timeout or open failure yields the fallback token and no rows.

STREAMING relays text, reasoning and tool lifecycle events. The assistant
row id is generated up front; the placeholder row is inserted with the
first text delta, before that token is emitted, so an abort can always
find (and clean up) exactly the row it created.

FINALIZING rewrites sandbox links, records usage, persists the final row,
runs the finalize hook (writer) and emits meta.

ABORTED is idempotent: no content means the placeholder id is deleted;
partial content is kept and marked aborted. The provider stream is
cancelled either way.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

from errors import LLMError, StoreError, StreamCancelled, log_error, stream_error_code
from logging_config import log_llm, log_message_out, log_tool
from services.chat_store import ChatStore, Message
from services.llm_client import ProviderRequest, ProviderStream
from services.sandbox import persist_container_id, rewrite_file_links
from services.usage import record_usage

from ..chat_streaming import (
    CancelToken,
    EventChannel,
    error_event,
    meta_event,
    preamble_event,
    status_event,
    token_event,
)
from .events import (
    PHASE_COMPLETE,
    PHASE_ERROR,
    PHASE_PROGRESS,
    PHASE_START,
    TOOL_CODE,
    TOOL_SEARCH,
    FinalResponse,
    ReasoningDelta,
    StreamError,
    TextDelta,
    ToolLifecycle,
    Usage,
    parse_provider_event,
)
from .search_domains import SearchDomainTracker

logger = logging.getLogger(__name__)

FALLBACK_TOKEN = "Sorry, something went wrong starting the model. Please retry."

FinalizeHook = Callable[[Message], Awaitable[None]]

__all__ = [
    "CancelToken",
    "EngineRequest",
    "FALLBACK_TOKEN",
    "Started",
    "StreamOutcome",
    "StreamState",
    "StreamingEngine",
    "TimedOut",
]


class StreamState(str, Enum):
    STARTING = "starting"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    DONE = "done"
    ABORTED = "aborted"


@dataclass(frozen=True)
class Started:
    stream: ProviderStream
    events: AsyncIterator[Dict[str, Any]]
    first_event: Optional[Dict[str, Any]]


@dataclass(frozen=True)
class TimedOut:
    reason: str  # timeout, open_failed
    error: Optional[BaseException] = None


@dataclass
class EngineRequest:
    """Everything the engine needs for one reply."""

    provider_request: ProviderRequest
    conversation_id: str
    user_id: str
    user_message_id: str
    assistant_message_id: str
    model_family: str
    topic_id: Optional[str] = None
    container_id: Optional[str] = None
    base_metadata: Dict[str, Any] = field(default_factory=dict)
    context_usage: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StreamOutcome:
    state: StreamState
    content: str = ""
    assistant_message_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    usage: Usage = field(default_factory=Usage)
    error: Optional[str] = None
    fallback: bool = False


class StreamingEngine:
    """One engine per request; never reused."""

    def __init__(
        self,
        provider,
        store: ChatStore,
        channel: EventChannel,
        cancel: CancelToken,
        start_timeout: float = 45.0,
        finalize_hook: Optional[FinalizeHook] = None,
        public_base_url: Optional[str] = None,
    ):
        self.provider = provider
        self.store = store
        self.channel = channel
        self.cancel = cancel
        self.start_timeout = start_timeout
        self.finalize_hook = finalize_hook
        self.public_base_url = public_base_url

        self.state = StreamState.STARTING
        self.domains = SearchDomainTracker()
        self._stream: Optional[ProviderStream] = None
        self._text: List[str] = []
        self._reasoning: List[str] = []
        self._placeholder_inserted = False
        self._final: Optional[FinalResponse] = None
        self._started_calls: set = set()
        self._finished_calls: set = set()
        self._tool_counts: Dict[str, int] = {}
        self._queries: List[str] = []
        self._container_id: Optional[str] = None
        self._aborted = False
        self._final_persisted = False
        self._request: Optional[EngineRequest] = None

    @property
    def text(self) -> str:
        return "".join(self._text)

    # =========================================================================
    # Entry point
    # =========================================================================

    async def run(self, request: EngineRequest) -> StreamOutcome:
        """Stream one reply end to end.

        Returns:
            StreamOutcome; cancellation returns an ABORTED outcome, except
            task cancellation which re-raises after cleanup
        """
        self._request = request
        self._container_id = request.container_id
        start_time = time.time()

        try:
            started = await self._start(request.provider_request)
            if isinstance(started, TimedOut):
                return await self._fallback(started)

            self.state = StreamState.STREAMING
            self._stream = started.stream
            if started.first_event is not None:
                await self._handle(started.first_event)
            async for raw in started.events:
                self.cancel.raise_if_cancelled()
                await self._handle(raw)
            self.cancel.raise_if_cancelled()
            if self._final is None and not self._text:
                raise LLMError(
                    "Model stream ended without a response",
                    model=request.provider_request.model,
                    error_type="stream",
                )

            log_llm(logger, "end", model=request.provider_request.model, duration=time.time() - start_time)
            return await self._finalize()

        except StreamCancelled:
            await self._abort()
            return StreamOutcome(StreamState.ABORTED, content=self.text, error="cancelled")
        except asyncio.CancelledError:
            await self._abort()
            raise
        except Exception as e:
            return await self._fail(e)

    # =========================================================================
    # STARTING
    # =========================================================================

    async def _start(self, request: ProviderRequest) -> Union[Started, TimedOut]:
        """Open the stream and read its first event within the start timeout."""

        async def _open() -> Started:
            stream = await self.provider.open_stream(request)
            self._stream = stream
            events = stream.__aiter__()
            try:
                first = await events.__anext__()
            except StopAsyncIteration:
                first = None
            return Started(stream=stream, events=events, first_event=first)

        try:
            return await asyncio.wait_for(_open(), timeout=self.start_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Model stream did not start within {self.start_timeout}s ({request.model})")
            await self._close_stream()
            return TimedOut("timeout")
        except LLMError as e:
            log_error(logger, e, context="stream_start", include_traceback=False)
            await self._close_stream()
            return TimedOut("open_failed", e)

    async def _fallback(self, timed_out: TimedOut) -> StreamOutcome:
        await self.channel.send(token_event(FALLBACK_TOKEN))
        self.state = StreamState.DONE
        return StreamOutcome(
            StreamState.DONE,
            content=FALLBACK_TOKEN,
            error=timed_out.reason,
            fallback=True,
        )

    # =========================================================================
    # STREAMING
    # =========================================================================

    async def _handle(self, raw: Dict[str, Any]) -> None:
        event = parse_provider_event(raw)
        if event is None:
            return
        if isinstance(event, TextDelta):
            await self._on_text(event.text)
        elif isinstance(event, ReasoningDelta):
            self._reasoning.append(event.text)
            await self.channel.send(preamble_event(event.text))
        elif isinstance(event, ToolLifecycle):
            await self._on_tool(event)
        elif isinstance(event, FinalResponse):
            self._final = event
            await self._on_final(event)
        elif isinstance(event, StreamError):
            raise LLMError(
                "Model stream failed",
                details=event.message,
                model=self._request.provider_request.model,
                error_type="stream",
            )

    async def _on_text(self, text: str) -> None:
        self._text.append(text)
        if not self._placeholder_inserted:
            await self._insert_placeholder()
        await self.channel.send(token_event(text))

    async def _insert_placeholder(self) -> None:
        request = self._request
        await self.store.insert_message(
            Message(
                id=request.assistant_message_id,
                conversation_id=request.conversation_id,
                user_id=request.user_id,
                role="assistant",
                content="",
                metadata={
                    "streaming": True,
                    "reasoningEffort": request.provider_request.reasoning_effort,
                },
                topic_id=request.topic_id,
            )
        )
        self._placeholder_inserted = True

    async def _on_tool(self, event: ToolLifecycle) -> None:
        call_id = event.call_id or f"{event.tool}:anonymous"

        if event.phase == PHASE_START:
            if call_id in self._started_calls:
                return
            self._started_calls.add(call_id)
            log_tool(logger, event.tool, "start", query=event.query)
            await self.channel.send(status_event(f"{event.tool}-start", query=event.query))
        elif event.phase == PHASE_PROGRESS:
            if call_id in self._finished_calls:
                return
            await self.channel.send(status_event(f"{event.tool}-progress", query=event.query))
        elif event.phase in (PHASE_COMPLETE, PHASE_ERROR):
            if call_id in self._finished_calls:
                return
            self._finished_calls.add(call_id)
            if event.phase == PHASE_COMPLETE:
                self._tool_counts[event.tool] = self._tool_counts.get(event.tool, 0) + 1
            log_tool(logger, event.tool, "end", phase=event.phase)
            await self.channel.send(status_event(f"{event.tool}-{event.phase}", query=event.query))

        if event.query and event.tool == TOOL_SEARCH and event.query not in self._queries:
            self._queries.append(event.query)
        if event.tool == TOOL_SEARCH and event.payload is not None:
            await self._emit_domains(event.payload)
        if event.tool == TOOL_CODE and event.container_id:
            await self._remember_container(event.container_id)

    async def _on_final(self, final: FinalResponse) -> None:
        if not self._text and final.output_text:
            await self._on_text(final.output_text)
        await self._emit_domains(final.output)
        for item in final.output:
            if item.get("type") == "code_interpreter_call" and item.get("container_id"):
                await self._remember_container(item["container_id"])

    async def _emit_domains(self, payload: Any) -> None:
        for domain in self.domains.add_from_payload(payload):
            await self.channel.send(status_event("search-domain", domain=domain))

    async def _remember_container(self, container_id: str) -> None:
        if container_id == self._container_id:
            return
        self._container_id = container_id
        try:
            await persist_container_id(self.store, self._request.conversation_id, container_id)
        except StoreError as e:
            log_error(logger, e, context="sandbox_container", include_traceback=False)

    # =========================================================================
    # FINALIZING
    # =========================================================================

    def _metadata(self) -> Dict[str, Any]:
        request = self._request
        usage = self._final.usage if self._final else Usage()
        metadata = dict(request.base_metadata)
        metadata.update({
            "streaming": False,
            "model": request.provider_request.model,
            "modelFamily": request.model_family,
            "reasoningEffort": request.provider_request.reasoning_effort,
            "usage": usage.to_dict(),
        })
        if self._reasoning:
            metadata["preamble"] = "".join(self._reasoning)
        if self.domains.domains:
            known = list(metadata.get("searchDomains") or [])
            metadata["searchDomains"] = known + [d for d in self.domains.domains if d not in known]
        if self._queries:
            metadata["searchQueries"] = self._queries
        if self._tool_counts:
            metadata["toolsUsed"] = sorted(self._tool_counts)
        if self._container_id:
            metadata["sandboxContainerId"] = self._container_id
        if self._final and self._final.response_id:
            metadata["responseId"] = self._final.response_id
        return metadata

    async def _finalize(self) -> StreamOutcome:
        self.state = StreamState.FINALIZING
        request = self._request
        metadata = self._metadata()
        content = rewrite_file_links(self.text, self._container_id, self.public_base_url)
        usage = self._final.usage if self._final else Usage()

        await record_usage(
            self.store,
            user_id=request.user_id,
            conversation_id=request.conversation_id,
            model=request.provider_request.model,
            input_tokens=usage.input_tokens,
            cached_tokens=usage.cached_tokens,
            output_tokens=usage.output_tokens,
            reasoning_tokens=usage.reasoning_tokens,
            tool_calls=self._tool_counts,
        )

        message = Message(
            id=request.assistant_message_id,
            conversation_id=request.conversation_id,
            user_id=request.user_id,
            role="assistant",
            content=content,
            metadata=metadata,
            topic_id=request.topic_id,
        )
        if self._placeholder_inserted:
            await self.store.update_message(message.id, content=content, metadata_patch=metadata)
        else:
            await self.store.insert_message(message)
            self._placeholder_inserted = True
        self._final_persisted = True

        if self.finalize_hook is not None:
            try:
                await self.finalize_hook(message)
            except (asyncio.CancelledError, StreamCancelled):
                raise
            except Exception as e:
                log_error(logger, e, context="finalize_hook")

        await self.channel.send(
            meta_event(
                assistant_message_id=message.id,
                user_message_id=request.user_message_id,
                model=request.provider_request.model,
                metadata=metadata,
                context_usage=request.context_usage,
            )
        )
        self.state = StreamState.DONE
        log_message_out(logger, tools_used=sorted(self._tool_counts), domains=len(self.domains), chars=len(content))
        return StreamOutcome(
            StreamState.DONE,
            content=content,
            assistant_message_id=message.id,
            metadata=metadata,
            usage=usage,
        )

    # =========================================================================
    # Failure and abort
    # =========================================================================

    async def _fail(self, error: Exception) -> StreamOutcome:
        """Mid-stream failure: keep what was streamed, tell the client, stop."""
        code = stream_error_code(error)
        log_error(logger, error, context="stream")
        await self._close_stream()

        if self._placeholder_inserted:
            try:
                await self.store.update_message(
                    self._request.assistant_message_id,
                    content=self.text,
                    metadata_patch={"streaming": False, "error": code},
                )
            except StoreError as e:
                log_error(logger, e, context="stream_flush", include_traceback=False)

        self.state = StreamState.DONE
        if not self.cancel.cancelled:
            await self.channel.send(error_event(code))
        return StreamOutcome(
            StreamState.DONE,
            content=self.text,
            assistant_message_id=self._request.assistant_message_id if self._placeholder_inserted else None,
            error=code,
        )

    async def _abort(self) -> None:
        """Clean up after cancellation. Safe to call more than once."""
        if self._aborted or self.state == StreamState.DONE:
            return
        self._aborted = True
        self.state = StreamState.ABORTED
        await self._close_stream()

        request = self._request
        if request is None or self._final_persisted:
            return
        try:
            if self._placeholder_inserted and self.text:
                await self.store.update_message(
                    request.assistant_message_id,
                    content=self.text,
                    metadata_patch={"streaming": False, "aborted": True},
                )
                logger.info(f"Stream aborted; kept partial reply {request.assistant_message_id}")
            else:
                await self.store.delete_message(request.assistant_message_id)
                logger.info("Stream aborted before any content; placeholder removed")
        except StoreError as e:
            log_error(logger, e, context="stream_abort", include_traceback=False)

    async def _close_stream(self) -> None:
        if self._stream is None:
            return
        try:
            await self.provider.cancel(self._stream)
        except Exception as e:
            logger.warning(f"Provider stream cancel failed: {e}")
