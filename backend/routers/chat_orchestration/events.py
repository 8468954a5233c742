"""
Provider Events - typed variants for the model provider's stream.

Raw provider payloads are parsed here, once, into a small closed set of
variants. The Streaming Engine matches on these and never on raw shape.

Variants:
- TextDelta: visible answer text
- ReasoningDelta: reasoning summary ("preamble") text
- ToolLifecycle: search / file_search / code_execution call transitions
- FinalResponse: terminal aggregate with usage counters
- StreamError: provider-reported failure mid-stream
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

TOOL_SEARCH = "search"
TOOL_FILE_SEARCH = "file_search"
TOOL_CODE = "code_execution"

PHASE_START = "start"
PHASE_PROGRESS = "progress"
PHASE_COMPLETE = "complete"
PHASE_ERROR = "error"

# Provider output item type -> tool name
_TOOL_ITEM_TYPES = {
    "web_search_call": TOOL_SEARCH,
    "file_search_call": TOOL_FILE_SEARCH,
    "code_interpreter_call": TOOL_CODE,
}

# Streaming event type -> (tool, phase)
_TOOL_EVENT_TYPES = {
    "response.web_search_call.in_progress": (TOOL_SEARCH, PHASE_START),
    "response.web_search_call.searching": (TOOL_SEARCH, PHASE_PROGRESS),
    "response.web_search_call.completed": (TOOL_SEARCH, PHASE_COMPLETE),
    "response.file_search_call.in_progress": (TOOL_FILE_SEARCH, PHASE_START),
    "response.file_search_call.searching": (TOOL_FILE_SEARCH, PHASE_PROGRESS),
    "response.file_search_call.completed": (TOOL_FILE_SEARCH, PHASE_COMPLETE),
    "response.code_interpreter_call.in_progress": (TOOL_CODE, PHASE_START),
    "response.code_interpreter_call.interpreting": (TOOL_CODE, PHASE_PROGRESS),
    "response.code_interpreter_call_code.delta": (TOOL_CODE, PHASE_PROGRESS),
    "response.code_interpreter_call.completed": (TOOL_CODE, PHASE_COMPLETE),
}

_TEXT_DELTA_TYPES = {"response.output_text.delta"}
_REASONING_DELTA_TYPES = {
    "response.reasoning_summary_text.delta",
    "response.reasoning_text.delta",
}
_FAILED_ITEM_STATUSES = {"failed", "incomplete"}


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True)
class ToolLifecycle:
    tool: str
    phase: str
    call_id: str
    query: Optional[str] = None
    payload: Any = None
    container_id: Optional[str] = None


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    cached_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "inputTokens": self.input_tokens,
            "cachedTokens": self.cached_tokens,
            "outputTokens": self.output_tokens,
            "reasoningTokens": self.reasoning_tokens,
        }


@dataclass(frozen=True)
class FinalResponse:
    response_id: Optional[str]
    output_text: str
    usage: Usage = field(default_factory=Usage)
    status: str = "completed"
    output: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class StreamError:
    message: str
    code: Optional[str] = None


ProviderEvent = Union[TextDelta, ReasoningDelta, ToolLifecycle, FinalResponse, StreamError]


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _usage(raw: Any) -> Usage:
    usage = _as_dict(raw)
    return Usage(
        input_tokens=_int(usage.get("input_tokens")),
        cached_tokens=_int(_as_dict(usage.get("input_tokens_details")).get("cached_tokens")),
        output_tokens=_int(usage.get("output_tokens")),
        reasoning_tokens=_int(_as_dict(usage.get("output_tokens_details")).get("reasoning_tokens")),
    )


def _output_text(output: List[Dict[str, Any]]) -> str:
    parts: List[str] = []
    for item in output:
        if _as_dict(item).get("type") != "message":
            continue
        for content in item.get("content") or []:
            content = _as_dict(content)
            if content.get("type") == "output_text" and isinstance(content.get("text"), str):
                parts.append(content["text"])
    return "".join(parts)


def _item_query(item: Dict[str, Any]) -> Optional[str]:
    action = _as_dict(item.get("action"))
    query = action.get("query") or item.get("query")
    if query:
        return str(query)
    queries = item.get("queries")
    if isinstance(queries, list) and queries:
        return ", ".join(str(q) for q in queries)
    return None


def _tool_item_event(item: Dict[str, Any], done: bool) -> Optional[ToolLifecycle]:
    tool = _TOOL_ITEM_TYPES.get(item.get("type", ""))
    if tool is None:
        return None
    if done:
        phase = PHASE_ERROR if item.get("status") in _FAILED_ITEM_STATUSES else PHASE_COMPLETE
    else:
        phase = PHASE_START
    return ToolLifecycle(
        tool=tool,
        phase=phase,
        call_id=str(item.get("id") or ""),
        query=_item_query(item),
        payload=item,
        container_id=item.get("container_id"),
    )


def parse_provider_event(raw: Any) -> Optional[ProviderEvent]:
    """Parse one raw provider event into a variant.

    Args:
        raw: Event dict as yielded by ProviderStream

    Returns:
        The matching variant, or None for events the engine doesn't use
    """
    event = _as_dict(raw)
    event_type = event.get("type", "")

    if event_type in _TEXT_DELTA_TYPES:
        delta = event.get("delta")
        return TextDelta(delta) if isinstance(delta, str) and delta else None

    if event_type in _REASONING_DELTA_TYPES:
        delta = event.get("delta")
        return ReasoningDelta(delta) if isinstance(delta, str) and delta else None

    if event_type in _TOOL_EVENT_TYPES:
        tool, phase = _TOOL_EVENT_TYPES[event_type]
        return ToolLifecycle(tool=tool, phase=phase, call_id=str(event.get("item_id") or ""))

    if event_type in ("response.output_item.added", "response.output_item.done"):
        return _tool_item_event(_as_dict(event.get("item")), done=event_type.endswith(".done"))

    if event_type in ("response.completed", "response.incomplete"):
        response = _as_dict(event.get("response"))
        output = [o for o in response.get("output") or [] if isinstance(o, dict)]
        return FinalResponse(
            response_id=response.get("id"),
            output_text=_output_text(output),
            usage=_usage(response.get("usage")),
            status=response.get("status") or event_type.rsplit(".", 1)[-1],
            output=output,
        )

    if event_type == "response.failed":
        error = _as_dict(_as_dict(event.get("response")).get("error"))
        return StreamError(message=error.get("message") or "Response failed", code=error.get("code"))

    if event_type == "error":
        return StreamError(message=event.get("message") or "Provider error", code=event.get("code"))

    return None
