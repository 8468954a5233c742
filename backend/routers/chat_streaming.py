"""
Parley Chat Streaming - NDJSON wire protocol

One JSON object per line, in emission order:
    {"model_info": {...}}              once, early
    {"status": {"type": ..., ...}}     progress (tools, evidence, domains)
    {"token": "..."}                   answer text
    {"preamble_delta": "..."}          reasoning summary text
    {"meta": {...}}                    once, on success
    {"error": "..."}                   mid-stream failure
    {"done": true}                     exactly once, last

Contains:
- CancelToken: request-scoped cancellation flag
- Event builders (model_info_event, status_event, ...)
- EventChannel: queue between the orchestrator task and the HTTP response
- ndjson_stream(): async generator fed to StreamingResponse
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

from errors import StreamCancelled

logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"

_SENTINEL = object()


class CancelToken:
    """Cancellation flag shared by everything serving one request. Cancelling twice is a no-op."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "client_disconnected") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise StreamCancelled("Request cancelled", reason=self.reason)

    async def wait(self) -> None:
        await self._event.wait()


# =============================================================================
# Event builders
# =============================================================================


def encode_event(event: Dict[str, Any]) -> bytes:
    return (json.dumps(event, ensure_ascii=False, separators=(",", ":"), default=str) + "\n").encode("utf-8")


def model_info_event(model: str, family: str, speed_mode: str, reasoning_effort: Optional[str]) -> Dict[str, Any]:
    return {
        "model_info": {
            "model": model,
            "resolvedFamily": family,
            "speedModeUsed": speed_mode,
            "reasoningEffort": reasoning_effort,
        }
    }


def status_event(status_type: str, **fields: Any) -> Dict[str, Any]:
    status = {"type": status_type}
    status.update({k: v for k, v in fields.items() if v is not None})
    return {"status": status}


def token_event(text: str) -> Dict[str, Any]:
    return {"token": text}


def preamble_event(text: str) -> Dict[str, Any]:
    return {"preamble_delta": text}


def meta_event(
    assistant_message_id: Optional[str],
    user_message_id: str,
    model: str,
    metadata: Dict[str, Any],
    context_usage: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "meta": {
            "assistantMessageId": assistant_message_id,
            "userMessageId": user_message_id,
            "model": model,
            "metadata": metadata,
            "contextUsage": context_usage or {},
        }
    }


def error_event(code: str) -> Dict[str, Any]:
    return {"error": code}


# =============================================================================
# Channel
# =============================================================================


class EventChannel:
    """Ordered event queue for one response.

    The producer calls send() and finally finish(); finish() emits
    {"done": true} once and closes the channel. Sending after the client
    went away raises StreamCancelled so the producer unwinds through its
    abort path.
    """

    def __init__(self, cancel: CancelToken):
        self.cancel = cancel
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self.meta_sent = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: Dict[str, Any]) -> None:
        self.cancel.raise_if_cancelled()
        if self._closed:
            logger.warning(f"Event dropped after done: {list(event)[0]}")
            return
        if "meta" in event:
            if self.meta_sent:
                logger.warning("Duplicate meta event dropped")
                return
            self.meta_sent = True
        await self._queue.put(event)

    def finish(self) -> None:
        """Emit the terminal done event and close. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait({"done": True})
        self._queue.put_nowait(_SENTINEL)

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            event = await self._queue.get()
            if event is _SENTINEL:
                return
            yield event


async def ndjson_stream(
    channel: EventChannel,
    task: "asyncio.Task[Any]",
) -> AsyncIterator[bytes]:
    """Serialize channel events for StreamingResponse.

    When the client disconnects, the response stops iterating and the
    finally block cancels the token and the producing task.
    """
    try:
        async for event in channel.events():
            yield encode_event(event)
    finally:
        if not task.done():
            channel.cancel.cancel()
            task.cancel()
