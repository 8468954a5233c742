"""
Shared pytest fixtures and fakes for the chat pipeline tests.

Fakes:
- FakeStream / FakeProvider: scripted model provider (stream events, open
  delays and failures, JSON policy responses, document uploads)
- FakeEvidenceClient: scripted evidence pipeline

Event builders produce raw provider events in the shape ProviderStream yields.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from config import RuntimeConfig
from services.chat_store import Conversation, InMemoryChatStore, Message, new_id
from services.evidence_client import EvidenceChunk, EvidenceResult


# ---------------------------------------------------------------------------
# Raw provider event builders
# ---------------------------------------------------------------------------

def text_delta(text: str) -> Dict[str, Any]:
    return {"type": "response.output_text.delta", "delta": text}


def reasoning_delta(text: str) -> Dict[str, Any]:
    return {"type": "response.reasoning_summary_text.delta", "delta": text}


def search_started(call_id: str, query: Optional[str] = None) -> Dict[str, Any]:
    item = {"type": "web_search_call", "id": call_id, "status": "in_progress"}
    if query:
        item["action"] = {"query": query}
    return {"type": "response.output_item.added", "item": item}


def search_done(call_id: str, urls: List[str], query: Optional[str] = None, status: str = "completed") -> Dict[str, Any]:
    item = {
        "type": "web_search_call",
        "id": call_id,
        "status": status,
        "action": {"query": query, "sources": [{"url": u} for u in urls]},
    }
    return {"type": "response.output_item.done", "item": item}


def search_completed_event(call_id: str) -> Dict[str, Any]:
    return {"type": "response.web_search_call.completed", "item_id": call_id}


def code_done(call_id: str, container_id: str) -> Dict[str, Any]:
    return {
        "type": "response.output_item.done",
        "item": {"type": "code_interpreter_call", "id": call_id, "status": "completed", "container_id": container_id},
    }


def completed(
    text: str = "",
    response_id: str = "resp_1",
    input_tokens: int = 120,
    cached_tokens: int = 20,
    output_tokens: int = 40,
    reasoning_tokens: int = 0,
    output: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    items = list(output or [])
    if text:
        items.append({"type": "message", "content": [{"type": "output_text", "text": text}]})
    return {
        "type": "response.completed",
        "response": {
            "id": response_id,
            "status": "completed",
            "output": items,
            "usage": {
                "input_tokens": input_tokens,
                "input_tokens_details": {"cached_tokens": cached_tokens},
                "output_tokens": output_tokens,
                "output_tokens_details": {"reasoning_tokens": reasoning_tokens},
            },
        },
    }


def failed(message: str = "server overloaded") -> Dict[str, Any]:
    return {"type": "response.failed", "response": {"error": {"message": message, "code": "server_error"}}}


# ---------------------------------------------------------------------------
# Fake provider
# ---------------------------------------------------------------------------

class FakeStream:
    """Yields scripted events. An Exception in the script is raised at that point."""

    def __init__(self, events: List[Any], delay: float = 0.0, hang_after: Optional[int] = None):
        self.events = list(events)
        self.delay = delay
        self.hang_after = hang_after
        self.closed = False
        self.response_id = None

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for index, event in enumerate(self.events):
            if self.hang_after is not None and index >= self.hang_after:
                await asyncio.Event().wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if isinstance(event, Exception):
                raise event
            yield event
        if self.hang_after is not None and self.hang_after >= len(self.events):
            await asyncio.Event().wait()

    async def close(self) -> None:
        self.closed = True


class FakeProvider:
    """Scripted stand-in for ModelProvider."""

    def __init__(
        self,
        events: Optional[List[Any]] = None,
        open_delay: float = 0.0,
        open_error: Optional[Exception] = None,
        json_responses: Optional[List[Any]] = None,
        hang_after: Optional[int] = None,
        event_delay: float = 0.0,
    ):
        self.events = list(events or [])
        self.open_delay = open_delay
        self.open_error = open_error
        self.json_responses = list(json_responses or [])
        self.hang_after = hang_after
        self.event_delay = event_delay
        self.requests: List[Any] = []
        self.cancelled: List[FakeStream] = []
        self.json_calls: List[Dict[str, Any]] = []
        self.uploads: List[Dict[str, Any]] = []
        self.index_id = "vs_test"
        self.stream: Optional[FakeStream] = None
        self.container_files: Dict[Any, bytes] = {}
        self.download_error: Optional[Exception] = None

    async def open_stream(self, request):
        self.requests.append(request)
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.open_error is not None:
            raise self.open_error
        self.stream = FakeStream(self.events, delay=self.event_delay, hang_after=self.hang_after)
        return self.stream

    async def cancel(self, stream) -> None:
        if stream is None:
            return
        self.cancelled.append(stream)
        await stream.close()

    async def complete_json(self, model: str, instructions: str, payload: Dict[str, Any], timeout: float = 8.0):
        self.json_calls.append({"model": model, "instructions": instructions, "payload": payload})
        if not self.json_responses:
            return {}
        response = self.json_responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def ensure_document_index(self, conversation_id: str, existing_id: Optional[str] = None) -> str:
        return existing_id or self.index_id

    async def upload_file(self, index_id: str, filename: str, data: bytes, mime_type: str) -> str:
        self.uploads.append({"index_id": index_id, "filename": filename, "data": data, "mime_type": mime_type})
        return f"file_{len(self.uploads)}"

    async def download_container_file(self, container_id: str, path: str) -> Optional[bytes]:
        if self.download_error is not None:
            raise self.download_error
        return self.container_files.get((container_id, path))


# ---------------------------------------------------------------------------
# Fake evidence pipeline
# ---------------------------------------------------------------------------

def evidence_result(
    enough: bool = True,
    urls: Optional[List[str]] = None,
    skipped: bool = False,
    skip_reason: Optional[str] = None,
) -> EvidenceResult:
    urls = urls if urls is not None else ["https://www.example.com/a", "https://docs.python.org/3/"]
    return EvidenceResult(
        queries=["test query"],
        chunks=[EvidenceChunk(text=f"Fact from {u}", url=u, title="Source", domain="", score=0.9) for u in urls],
        sources=[{"url": u, "title": "Source"} for u in urls],
        enough_evidence=enough,
        skipped=skipped,
        skip_reason=skip_reason,
    )


class FakeEvidenceClient:
    """Scripted stand-in for EvidenceClient."""

    def __init__(self, result: Optional[EvidenceResult] = None, error: Optional[Exception] = None, progress=None):
        self.result = result or evidence_result()
        self.error = error
        self.progress = list(progress or [])
        self.calls: List[Dict[str, Any]] = []

    async def run(self, prompt, recent_turns, locale, current_date, preferred_sources=None, force=False, on_progress=None):
        self.calls.append({"prompt": prompt, "recent_turns": recent_turns, "locale": locale, "force": force})
        for payload in self.progress:
            if on_progress is not None:
                await on_progress(payload)
        if self.error is not None:
            raise self.error
        return self.result


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


def make_config(**overrides) -> RuntimeConfig:
    """Isolated config: policies off, no sandbox, short timeouts."""
    config = RuntimeConfig()
    config.decision_policy_enabled = False
    config.writer_policy_enabled = False
    config.sandbox_enabled = False
    config.stream_start_timeout_s = 2.0
    config.cross_chat_default_enabled = True
    config.public_base_url = "https://parley.test"
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


async def seed_conversation(store: InMemoryChatStore, user_id: str = USER_ID, **fields) -> Conversation:
    return await store.create_conversation(Conversation(id=fields.pop("id", new_id()), user_id=user_id, **fields))


async def seed_message(store: InMemoryChatStore, conversation: Conversation, role: str, content: str, **fields) -> Message:
    return await store.insert_message(
        Message(
            id=fields.pop("id", new_id()),
            conversation_id=conversation.id,
            user_id=conversation.user_id,
            role=role,
            content=content,
            **fields,
        )
    )


@pytest.fixture
def store():
    return InMemoryChatStore()


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def conversation(store):
    return asyncio.run(seed_conversation(store, title="Test chat"))
